import asyncio
import logging
import signal
import sys
import time
from typing import Optional

from delayed_sell_to_grid.config import load_config
from delayed_sell_to_grid.controller.control_cycle import ControlCycle, PowerSetpoint
from delayed_sell_to_grid.errors import ControllerError
from delayed_sell_to_grid.ess.solaredge_ess import SolarEdgeEss
from delayed_sell_to_grid.factories.ess_factory import create_ess
from delayed_sell_to_grid.factories.meter_factory import create_meter
from delayed_sell_to_grid.server import start_server, STATUS, HISTORY, CONTROL


async def execute_cycle(cycle: ControlCycle, ess: SolarEdgeEss) -> Optional[PowerSetpoint]:
    """
    Refresh the storage system, run one control cycle and commit its setpoint.

    The setpoint staged by the cycle is written only after the cycle has
    completed. On any failure the staged values are dropped and the error
    is re-raised.
    """
    cycle.last_reading = None
    await ess.update_poll_registers()
    try:
        cycle.run()
        return await ess.apply_pending()
    except Exception:
        ess.discard_pending()
        raise


def _record_cycle(i: int, cycle: ControlCycle, setpoint: Optional[PowerSetpoint], error: Optional[str]) -> None:
    grid_power = cycle.last_reading
    STATUS.update({
        "grid_mode": cycle.ess.get_grid_mode().name,
        "grid_power": grid_power,
        "active_power": setpoint.active_power if setpoint else 0,
        "reactive_power": setpoint.reactive_power if setpoint else 0,
        "cycle": i,
        "last_error": error,
        "last_update": time.time(),
    })
    HISTORY["grid_power"].append(grid_power)
    HISTORY["active_power"].append(STATUS["active_power"])


async def main(stop_event: asyncio.Event | None = None, config_file: str = "config.yaml"):
    """
    Main async loop for the delayed sell-to-grid controller.
    Gracefully handles signals to allow clean shutdown.
    """
    register_signals = stop_event is None
    stop_event = stop_event or asyncio.Event()

    # Only register OS signals if no stop_event was provided (i.e., production)
    if register_signals:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

    # Load config (logger configured automatically)
    config = load_config(config_file)
    ctrl = config.controller
    CONTROL["enabled"] = ctrl.enabled

    meter = create_meter(config.meter, meter_id=ctrl.meter_id)
    ess = create_ess(config.ess, ess_id=ctrl.ess_id)
    cycle = ControlCycle(
        ess=ess,
        meter=meter,
        continuous_sell_to_grid_power=ctrl.continuous_sell_to_grid_power,
        sell_to_grid_power_limit=ctrl.sell_to_grid_power_limit,
        logger=logging.getLogger(ctrl.id),
        ess_id=ctrl.ess_id,
        meter_id=ctrl.meter_id,
    )

    runner = None
    i = 0
    try:
        await meter.ensure_connected()
        if not meter.connected:
            logging.error("Failed to connect to ESPHome meter.")
            sys.exit(1)

        if not await ess.check_connection():
            logging.error("Failed to connect to SolarEdge storage system.")
            sys.exit(1)

        runner = await start_server(config)

        logging.info(
            "Controller %s running: continuous=%d W, limit=%d W, cycle=%.1f s",
            ctrl.id, ctrl.continuous_sell_to_grid_power, ctrl.sell_to_grid_power_limit, ctrl.cycle_seconds,
        )

        while not stop_event.is_set():
            if CONTROL["enabled"]:
                i += 1
                error: Optional[str] = None
                setpoint: Optional[PowerSetpoint] = None
                try:
                    setpoint = await execute_cycle(cycle, ess)
                except ControllerError as exc:
                    error = exc.message
                    logging.error("Cycle %d failed: %s", i, exc.message)

                _record_cycle(i, cycle, setpoint, error)
            else:
                logging.debug("Controller %s disabled, skipping cycle", ctrl.id)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=ctrl.cycle_seconds)
            except asyncio.TimeoutError:
                pass

    finally:
        logging.info("Shutting down, disconnecting devices...")
        await meter.disconnect()
        if runner is not None:
            await runner.cleanup()
        logging.info("Shutdown complete.")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nDelayed sell-to-grid controller stopped by user.")


if __name__ == "__main__":
    run()
