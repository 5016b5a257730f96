from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import confuse

from delayed_sell_to_grid.errors import ConfigError
from delayed_sell_to_grid.logger import setup_logger

_REQUIRED = object()


@dataclass(frozen=True)
class ControllerConfig:
    continuous_sell_to_grid_power: int
    sell_to_grid_power_limit: int
    id: str = "ctrlDelayedSellToGrid0"
    alias: str = ""
    enabled: bool = True
    ess_id: str = "ess0"
    meter_id: str = "meter0"
    cycle_seconds: float = 1.0


@dataclass(frozen=True)
class EssConfig:
    device: str
    baud: int
    timeout: int
    unit: int = 1
    command_timeout: int = 60


@dataclass(frozen=True)
class MeterConfig:
    host: str
    port: int
    encryption_key: str
    reconnect_delay: float = 5.0
    stale_timeout: float = 30.0


@dataclass(frozen=True)
class AppConfig:
    controller: ControllerConfig
    ess: EssConfig
    meter: MeterConfig
    api_token: str
    debug_level: str

    # API server settings
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # TLS settings
    api_tls_enabled: bool = False
    api_tls_certfile: str = "certs/server.crt"
    api_tls_keyfile: str = "certs/server.key"


def _cfg_get(cfg: confuse.Configuration, path: list[str], typ: Any, default: Any = _REQUIRED) -> Any:
    node = cfg
    try:
        for key in path:
            node = node[key]
        return node.get(typ)
    except confuse.NotFoundError:
        if default is _REQUIRED:
            raise ConfigError(f"{'.'.join(path)} is required")
        return default
    except confuse.ConfigError as exc:
        raise ConfigError(str(exc)) from exc


def validate_thresholds(continuous_sell_to_grid_power: int, sell_to_grid_power_limit: int) -> None:
    """
    Reject a dead-band whose lower edge lies above its upper edge.

    With continuous > limit the throttle branches overlap and any grid
    power above the limit would still be lifted instead of capped.
    """
    if continuous_sell_to_grid_power > sell_to_grid_power_limit:
        raise ConfigError(
            f"continuous_sell_to_grid_power ({continuous_sell_to_grid_power} W) must not exceed "
            f"sell_to_grid_power_limit ({sell_to_grid_power_limit} W)"
        )


def load_config(config_file: str = "config.yaml") -> AppConfig:
    cfg = confuse.Configuration("delayed_sell_to_grid", __name__)
    try:
        cfg.set_file(config_file)
    except confuse.ConfigReadError as exc:
        raise ConfigError(str(exc)) from exc

    controller_id = _cfg_get(cfg, ["CONTROLLER", "ID"], str, "ctrlDelayedSellToGrid0")
    controller = ControllerConfig(
        id=controller_id,
        alias=_cfg_get(cfg, ["CONTROLLER", "ALIAS"], str, controller_id),
        enabled=_cfg_get(cfg, ["CONTROLLER", "ENABLED"], bool, True),
        ess_id=_cfg_get(cfg, ["CONTROLLER", "ESS_ID"], str, "ess0"),
        meter_id=_cfg_get(cfg, ["CONTROLLER", "METER_ID"], str, "meter0"),
        continuous_sell_to_grid_power=_cfg_get(cfg, ["CONTROLLER", "CONTINUOUS_SELL_TO_GRID_POWER"], int),
        sell_to_grid_power_limit=_cfg_get(cfg, ["CONTROLLER", "SELL_TO_GRID_POWER_LIMIT"], int),
        cycle_seconds=_cfg_get(cfg, ["CONTROLLER", "CYCLE_SECONDS"], float, 1.0),
    )
    validate_thresholds(controller.continuous_sell_to_grid_power, controller.sell_to_grid_power_limit)
    if controller.cycle_seconds <= 0:
        raise ConfigError("CONTROLLER.CYCLE_SECONDS must be positive")

    ess = EssConfig(
        device=_cfg_get(cfg, ["ESS", "DEVICE"], str, "/dev/ttyUSB0"),
        baud=_cfg_get(cfg, ["ESS", "BAUD"], int, 9600),
        timeout=_cfg_get(cfg, ["ESS", "TIMEOUT"], int, 2),
        unit=_cfg_get(cfg, ["ESS", "UNIT"], int, 1),
        command_timeout=_cfg_get(cfg, ["ESS", "COMMAND_TIMEOUT"], int, 60),
    )

    meter = MeterConfig(
        host=_cfg_get(cfg, ["METER", "HOST"], str, "127.0.0.1"),
        port=_cfg_get(cfg, ["METER", "PORT"], int, 6053),
        encryption_key=_cfg_get(cfg, ["METER", "ENCRYPTION_KEY"], str, ""),
        reconnect_delay=_cfg_get(cfg, ["METER", "RECONNECT_DELAY"], float, 5.0),
        stale_timeout=_cfg_get(cfg, ["METER", "STALE_TIMEOUT"], float, 30.0),
    )

    api_token = _cfg_get(cfg, ["API", "TOKEN"], str, "")
    debug_level = _cfg_get(cfg, ["DEBUG_LEVEL"], str, "INFO")

    setup_logger(debug_level)

    return AppConfig(
        controller=controller,
        ess=ess,
        meter=meter,
        api_token=api_token,
        debug_level=debug_level,
        api_host=_cfg_get(cfg, ["API", "HOST"], str, "0.0.0.0"),
        api_port=_cfg_get(cfg, ["API", "PORT"], int, 8080),
        api_tls_enabled=_cfg_get(cfg, ["API", "TLS_ENABLED"], bool, False),
        api_tls_certfile=_cfg_get(cfg, ["API", "TLS_CERTFILE"], str, "certs/server.crt"),
        api_tls_keyfile=_cfg_get(cfg, ["API", "TLS_KEYFILE"], str, "certs/server.key"),
    )
