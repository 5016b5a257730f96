from enum import Enum, IntEnum
from dataclasses import dataclass
from typing import Optional, Dict

from solaredge_modbus import registerDataType, registerType


class PollGroup(Enum):
    POLL = "poll"
    SETPOINT = "setpoint"


class StorageControlMode(IntEnum):
    DISABLED = 0
    MAXIMIZE_SELF_CONSUMPTION = 1
    TIME_OF_USE = 2
    BACKUP_ONLY = 3
    REMOTE_CONTROL = 4


class RemoteControlCommand(IntEnum):
    OFF = 0
    CHARGE_EXCESS_PV = 1
    CHARGE_PV_FIRST = 2
    CHARGE_PV_AND_AC = 3
    MAXIMIZE_EXPORT = 4
    DISCHARGE_TO_MINIMIZE_IMPORT = 5
    MAXIMIZE_SELF_CONSUMPTION = 7


@dataclass(frozen=True)
class RegisterDef:
    scale: Optional[str]
    group: PollGroup


REGISTERS: Dict[str, RegisterDef] = {
    # AC side, read every cycle
    "status": RegisterDef(None, PollGroup.POLL),
    "power_ac": RegisterDef("power_ac_scale", PollGroup.POLL),
    "frequency": RegisterDef("frequency_scale", PollGroup.POLL),
    "power_ac_scale": RegisterDef(None, PollGroup.POLL),
    "frequency_scale": RegisterDef(None, PollGroup.POLL),

    # Power factor and StorEdge remote control, written when a setpoint is applied
    "cosphi": RegisterDef(None, PollGroup.SETPOINT),
    "storage_control_mode": RegisterDef(None, PollGroup.SETPOINT),
    "rc_cmd_timeout": RegisterDef(None, PollGroup.SETPOINT),
    "rc_cmd_mode": RegisterDef(None, PollGroup.SETPOINT),
    "rc_charge_limit": RegisterDef(None, PollGroup.SETPOINT),
    "rc_discharge_limit": RegisterDef(None, PollGroup.SETPOINT),
}


# StorEdge storage control block, absent from solaredge_modbus.Inverter.
# Same layout as the library: address, length, register, type, target type,
# description, unit, batch.
STOREDGE_REGISTERS = {
    "storage_control_mode": (0xe004, 1, registerType.HOLDING, registerDataType.UINT16, int, "Storage Control Mode", "", 6),
    "rc_cmd_timeout": (0xe00b, 2, registerType.HOLDING, registerDataType.UINT32, int, "Remote Control Command Timeout", "s", 6),
    "rc_cmd_mode": (0xe00d, 1, registerType.HOLDING, registerDataType.UINT16, int, "Remote Control Command Mode", "", 6),
    "rc_charge_limit": (0xe00e, 2, registerType.HOLDING, registerDataType.FLOAT32, float, "Remote Control Charge Limit", "W", 6),
    "rc_discharge_limit": (0xe010, 2, registerType.HOLDING, registerDataType.FLOAT32, float, "Remote Control Discharge Limit", "W", 6),
}
