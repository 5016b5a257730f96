from enum import Enum
from typing import assert_never


class GridMode(Enum):
    ON_GRID = "on_grid"
    OFF_GRID = "off_grid"
    UNDEFINED = "undefined"


def should_run(grid_mode: GridMode) -> bool:
    """
    Decide whether the throttle logic runs this cycle.

    Only an islanded system is skipped. An undefined grid mode is treated
    like on-grid; reporting it is left to the caller.
    """
    match grid_mode:
        case GridMode.ON_GRID | GridMode.UNDEFINED:
            return True
        case GridMode.OFF_GRID:
            return False
        case _:
            assert_never(grid_mode)
