from delayed_sell_to_grid.meter.esphome_meter import ESPHomeMeter
from delayed_sell_to_grid.config import MeterConfig


def create_meter(config: MeterConfig, meter_id: str = "meter0") -> ESPHomeMeter:
    """Instantiate the configured grid meter."""
    return ESPHomeMeter(
        host=config.host,
        port=config.port,
        encryption_key=config.encryption_key,
        reconnect_delay=config.reconnect_delay,
        stale_timeout=config.stale_timeout,
        meter_id=meter_id,
    )
