from delayed_sell_to_grid.ess.solaredge_ess import SolarEdgeEss
from delayed_sell_to_grid.config import EssConfig


def create_ess(config: EssConfig, ess_id: str = "ess0") -> SolarEdgeEss:
    """
    Instantiate the configured storage system.
    """
    return SolarEdgeEss(
        device=config.device,
        baud=config.baud,
        timeout=config.timeout,
        unit=config.unit,
        command_timeout=config.command_timeout,
        ess_id=ess_id,
    )
