import asyncio
import logging
import time
from typing import Optional, Dict, Any

import solaredge_modbus

from delayed_sell_to_grid.controller.control_cycle import PowerSetpoint
from delayed_sell_to_grid.controller.grid_mode import GridMode
from delayed_sell_to_grid.errors import CollaboratorUnavailableError

from .solaredge_ess_registers import (
    REGISTERS,
    STOREDGE_REGISTERS,
    PollGroup,
    RemoteControlCommand,
    StorageControlMode,
)


class SolarEdgeEss(solaredge_modbus.Inverter):
    """
    SolarEdge StorEdge inverter driven as a managed storage system.

    Setpoints are staged with `set_active_power_equals` and
    `set_reactive_power_equals` and only reach the inverter when
    `apply_pending()` writes both in one Modbus session. If a write fails
    part way, the remote control command is set back to OFF before the
    error propagates.

    Positive active power discharges the battery, negative active power
    charges it. `calculate_power` returns a positive value both above the
    sell limit and below the continuous threshold, so grid power above
    the limit is answered with a discharge, not a charge.
    """

    def __init__(self,
                 device: str = "/dev/ttyUSB0",
                 baud: int = 9600,
                 timeout: int = 2,
                 unit: int = 1,
                 command_timeout: int = 60,
                 ess_id: str = "ess0") -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.info("Initializing SolarEdgeEss %s...", ess_id)
        super().__init__(device=device, baud=baud, timeout=timeout, unit=unit)
        self.registers.update(STOREDGE_REGISTERS)

        self.ess_id = ess_id
        self.command_timeout = command_timeout

        for reg in REGISTERS.keys():
            setattr(self, reg, None)

        # Last successful poll timestamp
        self.last_updated: float = 0.0

        self._pending_active: Optional[int] = None
        self._pending_reactive: Optional[int] = None

    # -------------------------
    # Async Connection Helpers
    # -------------------------
    async def check_connection(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._sync_check_connection)

    def _sync_check_connection(self) -> bool:
        self.connect()
        try:
            return self.connected()
        finally:
            self.disconnect()

    # -------------------------
    # Async Register Reads
    # -------------------------
    async def update_poll_registers(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(None, self._sync_update_register_group, PollGroup.POLL)
        except CollaboratorUnavailableError:
            raise
        except Exception as exc:
            raise CollaboratorUnavailableError(str(exc), "ess", self.ess_id) from exc
        regs = [r for r, v in REGISTERS.items() if v.group == PollGroup.POLL]
        self._apply_registers(raw, regs)
        self.last_updated = time.time()

    def _sync_update_register_group(self, group: PollGroup) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        self.connect()
        try:
            if not self.connected():
                raise CollaboratorUnavailableError("Failed to connect to inverter", "ess", self.ess_id)
            for name, reg in REGISTERS.items():
                if reg.group == group:
                    try:
                        data.update(self.read(name))
                    except Exception as exc:
                        self.logger.error("Error reading register %s: %s", name, exc)
                        data[name] = None
            return data
        finally:
            self.disconnect()

    def _apply_registers(self, raw_registers: Dict[str, Any], keys: list[str]) -> None:
        for key in keys:
            if key not in raw_registers:
                continue

            value = raw_registers[key]
            scale_key = REGISTERS[key].scale
            if (
                value is not None
                and scale_key
                and raw_registers.get(scale_key) is not None
            ):
                try:
                    value = float(value) * (10 ** int(raw_registers[scale_key]))
                except (TypeError, ValueError) as exc:
                    self.logger.warning("Scaling failed for %s: %s", key, exc)

            setattr(self, key, value)

    # -------------------------
    # Grid Mode
    # -------------------------
    def get_grid_mode(self) -> GridMode:
        """
        Derive the grid connection state from the last poll.

        Unknown status or frequency gives UNDEFINED. A frequency of 0 Hz
        means the AC side is dead and the site is islanded.
        """
        if not self.last_updated:
            return GridMode.UNDEFINED

        status = getattr(self, "status", None)
        frequency = getattr(self, "frequency", None)
        if status is None or frequency is None:
            return GridMode.UNDEFINED
        if float(frequency) <= 0.0:
            return GridMode.OFF_GRID
        return GridMode.ON_GRID

    # -------------------------
    # Staged Setpoints
    # -------------------------
    def set_active_power_equals(self, value: int) -> None:
        self._pending_active = int(value)

    def set_reactive_power_equals(self, value: int) -> None:
        if value != 0:
            raise ValueError("StorEdge remote control only supports 0 var reactive power.")
        self._pending_reactive = 0

    @property
    def pending_setpoint(self) -> Optional[PowerSetpoint]:
        if self._pending_active is None or self._pending_reactive is None:
            return None
        return PowerSetpoint(self._pending_active, self._pending_reactive)

    def discard_pending(self) -> None:
        self._pending_active = None
        self._pending_reactive = None

    async def apply_pending(self) -> Optional[PowerSetpoint]:
        """
        Write the staged setpoint to the inverter.

        Returns the applied setpoint, or None when nothing was staged.
        A setpoint with only one of active and reactive power staged is
        discarded and reported as an error.
        """
        if self._pending_active is None and self._pending_reactive is None:
            return None

        setpoint = self.pending_setpoint
        self.discard_pending()
        if setpoint is None:
            raise CollaboratorUnavailableError(
                "Incomplete setpoint, active and reactive power must both be set", "ess", self.ess_id
            )

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._sync_apply_setpoint, setpoint)
        except CollaboratorUnavailableError:
            raise
        except Exception as exc:
            raise CollaboratorUnavailableError(str(exc), "ess", self.ess_id) from exc
        return setpoint

    def _sync_apply_setpoint(self, setpoint: PowerSetpoint) -> None:
        self.connect()
        try:
            if not self.connected():
                raise CollaboratorUnavailableError("Failed to connect to inverter", "ess", self.ess_id)

            # Unity power factor, no reactive power
            self.write("cosphi", 1.0)

            try:
                self.write("storage_control_mode", int(StorageControlMode.REMOTE_CONTROL))
                self.write("rc_cmd_timeout", self.command_timeout)

                if setpoint.active_power > 0:
                    self.write("rc_discharge_limit", float(setpoint.active_power))
                    self.write("rc_cmd_mode", int(RemoteControlCommand.MAXIMIZE_EXPORT))
                elif setpoint.active_power < 0:
                    self.write("rc_charge_limit", float(-setpoint.active_power))
                    self.write("rc_cmd_mode", int(RemoteControlCommand.CHARGE_PV_AND_AC))
                else:
                    self.write("rc_cmd_mode", int(RemoteControlCommand.OFF))
            except Exception:
                self._sync_rollback()
                raise
        finally:
            self.disconnect()

    def _sync_rollback(self) -> None:
        """Stop any remote control command left behind by a partial write."""
        try:
            self.write("rc_cmd_mode", int(RemoteControlCommand.OFF))
        except Exception as exc:
            self.logger.error("Rollback of remote control command failed: %s", exc)
        else:
            self.logger.warning("Setpoint write failed, remote control command set to OFF")
