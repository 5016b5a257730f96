import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from delayed_sell_to_grid.controller.grid_mode import GridMode, should_run
from delayed_sell_to_grid.controller.throttle import calculate_power
from delayed_sell_to_grid.errors import CollaboratorUnavailableError


class Meter(Protocol):
    def get_active_power(self) -> Optional[int]:
        """Net power at the grid connection point in watts, None if unknown."""
        ...


class ManagedEss(Protocol):
    def get_grid_mode(self) -> GridMode:
        ...

    def set_active_power_equals(self, value: int) -> None:
        ...

    def set_reactive_power_equals(self, value: int) -> None:
        ...


@dataclass(frozen=True)
class PowerSetpoint:
    active_power: int
    reactive_power: int = 0


class ControlCycle:
    """
    One control cycle of the delayed sell-to-grid controller.

    Every call to `run` reads the grid mode from the storage system, skips
    the cycle when it is off-grid, and otherwise turns the metered grid
    power into an active power setpoint. Reactive power is always set to 0.

    Nothing is kept between cycles. Callers must not run two cycles for
    the same storage system at once.
    """

    def __init__(self,
                 ess: ManagedEss,
                 meter: Meter,
                 continuous_sell_to_grid_power: int,
                 sell_to_grid_power_limit: int,
                 logger: Optional[logging.Logger] = None,
                 ess_id: Optional[str] = None,
                 meter_id: Optional[str] = None) -> None:
        self.ess = ess
        self.meter = meter
        self.continuous_sell_to_grid_power = int(continuous_sell_to_grid_power)
        self.sell_to_grid_power_limit = int(sell_to_grid_power_limit)
        self.ess_id = ess_id
        self.meter_id = meter_id
        self.logger = logger or logging.getLogger(self.__class__.__name__)

        # Meter reading of the latest cycle, None if skipped or unknown
        self.last_reading: Optional[int] = None

    def run(self) -> None:
        self.last_reading = None
        grid_mode: GridMode = self._call("ess", self.ess.get_grid_mode)
        if grid_mode is GridMode.UNDEFINED:
            self.logger.warning("Grid-Mode is [UNDEFINED]")
        if not should_run(grid_mode):
            self.logger.debug("Grid-Mode is [%s], skipping cycle", grid_mode.name)
            return

        reading: Optional[int] = self._call("meter", self.meter.get_active_power)
        self.last_reading = reading
        grid_power = reading if reading is not None else 0
        if reading is None:
            self.logger.debug("Grid power unknown, assuming 0 W")

        setpoint = PowerSetpoint(
            active_power=calculate_power(
                grid_power,
                self.continuous_sell_to_grid_power,
                self.sell_to_grid_power_limit,
            ),
            reactive_power=0,
        )

        self._call("ess", self.ess.set_active_power_equals, setpoint.active_power)
        self._call("ess", self.ess.set_reactive_power_equals, setpoint.reactive_power)

        self.logger.info(
            "Grid-Mode=%s, Grid=%s W, Active=%d W, Reactive=%d var",
            grid_mode.name, reading, setpoint.active_power, setpoint.reactive_power,
        )

    def _call(self, collaborator: str, func: Callable[..., Any], *args: Any) -> Any:
        """Call a collaborator and report any failure as CollaboratorUnavailableError."""
        device_id = self.ess_id if collaborator == "ess" else self.meter_id
        try:
            return func(*args)
        except CollaboratorUnavailableError:
            raise
        except Exception as exc:
            raise CollaboratorUnavailableError(str(exc), collaborator, device_id) from exc
