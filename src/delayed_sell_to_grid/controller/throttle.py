def calculate_power(grid_power: int,
                    continuous_sell_to_grid_power: int,
                    sell_to_grid_power_limit: int) -> int:
    """
    Compute the active power setpoint for the storage system.

    Parameters
    ----------
    grid_power : int
        Measured power at the grid connection point in watts.
        Positive values are export, negative values are import.

    continuous_sell_to_grid_power : int
        Lower edge of the dead-band. At or below it the storage system
        releases enough power to lift the grid power up to this value.

    sell_to_grid_power_limit : int
        Upper edge of the dead-band. At or above it the storage system
        takes the excess over the limit.

    Returns
    -------
    int
        Active power in watts. Zero inside the dead-band.

    The branches are checked in order, so a grid power matching both
    thresholds resolves to the first one.
    """
    if grid_power <= continuous_sell_to_grid_power:
        return abs(grid_power - continuous_sell_to_grid_power)
    if grid_power >= sell_to_grid_power_limit:
        return grid_power - sell_to_grid_power_limit
    return 0
