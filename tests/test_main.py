import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from delayed_sell_to_grid import server
from delayed_sell_to_grid.config import AppConfig, ControllerConfig, EssConfig, MeterConfig
from delayed_sell_to_grid.controller.control_cycle import ControlCycle, PowerSetpoint
from delayed_sell_to_grid.controller.grid_mode import GridMode
from delayed_sell_to_grid.errors import CollaboratorUnavailableError
from delayed_sell_to_grid.main import execute_cycle, main


@pytest.fixture
def config():
    return AppConfig(
        controller=ControllerConfig(
            continuous_sell_to_grid_power=1000,
            sell_to_grid_power_limit=5000,
            cycle_seconds=0.01,
        ),
        ess=EssConfig(device="/dev/null", baud=9600, timeout=2),
        meter=MeterConfig(host="127.0.0.1", port=6053, encryption_key=""),
        api_token="",
        debug_level="INFO",
    )


@pytest.fixture
def mock_ess():
    ess = MagicMock()
    # Async methods
    ess.check_connection = AsyncMock(return_value=True)
    ess.update_poll_registers = AsyncMock(return_value=None)
    ess.apply_pending = AsyncMock(return_value=PowerSetpoint(800, 0))
    # Sync methods
    ess.get_grid_mode.return_value = GridMode.ON_GRID
    return ess


@pytest.fixture
def mock_meter():
    meter = MagicMock()
    meter.connected = False
    # Async methods
    meter.ensure_connected = AsyncMock(side_effect=lambda: setattr(meter, "connected", True))
    meter.disconnect = AsyncMock()
    # Sync methods
    meter.get_active_power.return_value = 200
    return meter


@pytest.fixture(autouse=True)
def reset_shared_state():
    server.CONTROL["enabled"] = True
    for history in server.HISTORY.values():
        history.clear()
    yield
    server.CONTROL["enabled"] = True


# ------------------------
# execute_cycle
# ------------------------
@pytest.mark.asyncio
async def test_execute_cycle_refreshes_runs_and_commits(mock_ess, mock_meter):
    cycle = ControlCycle(mock_ess, mock_meter, 1000, 5000)

    applied = await execute_cycle(cycle, mock_ess)

    assert applied == PowerSetpoint(800, 0)
    mock_ess.update_poll_registers.assert_awaited_once()
    mock_ess.set_active_power_equals.assert_called_once_with(800)
    mock_ess.set_reactive_power_equals.assert_called_once_with(0)
    mock_ess.apply_pending.assert_awaited_once()
    mock_ess.discard_pending.assert_not_called()


@pytest.mark.asyncio
async def test_execute_cycle_discards_on_failure(mock_ess, mock_meter):
    mock_meter.get_active_power.side_effect = RuntimeError("meter offline")
    cycle = ControlCycle(mock_ess, mock_meter, 1000, 5000)

    with pytest.raises(CollaboratorUnavailableError):
        await execute_cycle(cycle, mock_ess)

    mock_ess.apply_pending.assert_not_awaited()
    mock_ess.discard_pending.assert_called_once()


@pytest.mark.asyncio
async def test_execute_cycle_discards_when_commit_fails(mock_ess, mock_meter):
    mock_ess.apply_pending.side_effect = CollaboratorUnavailableError("no response", "ess", "ess0")
    cycle = ControlCycle(mock_ess, mock_meter, 1000, 5000)

    with pytest.raises(CollaboratorUnavailableError):
        await execute_cycle(cycle, mock_ess)

    mock_ess.discard_pending.assert_called_once()


@pytest.mark.asyncio
async def test_execute_cycle_off_grid_commits_nothing(mock_ess, mock_meter):
    mock_ess.get_grid_mode.return_value = GridMode.OFF_GRID
    mock_ess.apply_pending.return_value = None
    cycle = ControlCycle(mock_ess, mock_meter, 1000, 5000)

    assert await execute_cycle(cycle, mock_ess) is None
    mock_ess.set_active_power_equals.assert_not_called()


# ------------------------
# main loop
# ------------------------
def _patched(config, mock_ess, mock_meter):
    runner = MagicMock()
    runner.cleanup = AsyncMock()
    return (
        patch("delayed_sell_to_grid.main.load_config", return_value=config),
        patch("delayed_sell_to_grid.main.create_ess", return_value=mock_ess),
        patch("delayed_sell_to_grid.main.create_meter", return_value=mock_meter),
        patch("delayed_sell_to_grid.main.start_server", AsyncMock(return_value=runner)),
    )


@pytest.mark.asyncio
async def test_main_loop_runs(config, mock_ess, mock_meter):
    stop_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, stop_event.set)

    p_cfg, p_ess, p_meter, p_server = _patched(config, mock_ess, mock_meter)
    with p_cfg, p_ess, p_meter, p_server:
        await main(stop_event=stop_event)

    mock_meter.ensure_connected.assert_awaited()
    mock_ess.check_connection.assert_awaited()
    mock_ess.update_poll_registers.assert_awaited()
    mock_ess.set_active_power_equals.assert_called_with(800)
    mock_ess.apply_pending.assert_awaited()
    mock_meter.disconnect.assert_awaited()

    assert server.STATUS["active_power"] == 800
    assert server.STATUS["grid_mode"] == "ON_GRID"
    assert server.STATUS["last_error"] is None
    assert list(server.HISTORY["grid_power"])[-1] == 200


@pytest.mark.asyncio
async def test_main_loop_survives_failed_cycle(config, mock_ess, mock_meter):
    stop_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, stop_event.set)
    mock_ess.update_poll_registers.side_effect = CollaboratorUnavailableError("timeout", "ess", "ess0")

    p_cfg, p_ess, p_meter, p_server = _patched(config, mock_ess, mock_meter)
    with p_cfg, p_ess, p_meter, p_server:
        await main(stop_event=stop_event)

    assert mock_ess.update_poll_registers.await_count >= 1
    mock_ess.apply_pending.assert_not_awaited()
    assert "timeout" in server.STATUS["last_error"]
    assert list(server.HISTORY["grid_power"])[-1] is None
    mock_meter.get_active_power.assert_not_called()


@pytest.mark.asyncio
async def test_main_loop_reads_meter_once_per_cycle(config, mock_ess, mock_meter):
    stop_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, stop_event.set)

    p_cfg, p_ess, p_meter, p_server = _patched(config, mock_ess, mock_meter)
    with p_cfg, p_ess, p_meter, p_server:
        await main(stop_event=stop_event)

    assert mock_meter.get_active_power.call_count == server.STATUS["cycle"]


@pytest.mark.asyncio
async def test_main_exits_before_serving_when_meter_unreachable(config, mock_ess, mock_meter):
    mock_meter.ensure_connected = AsyncMock()

    p_cfg, p_ess, p_meter, p_server = _patched(config, mock_ess, mock_meter)
    with p_cfg, p_ess, p_meter, p_server as start_server:
        with pytest.raises(SystemExit):
            await main(stop_event=asyncio.Event())

    start_server.assert_not_awaited()
    mock_ess.check_connection.assert_not_awaited()
    mock_meter.disconnect.assert_awaited_once()


@pytest.mark.asyncio
async def test_main_exits_before_serving_when_ess_unreachable(config, mock_ess, mock_meter):
    mock_ess.check_connection.return_value = False

    p_cfg, p_ess, p_meter, p_server = _patched(config, mock_ess, mock_meter)
    with p_cfg, p_ess, p_meter, p_server as start_server:
        with pytest.raises(SystemExit):
            await main(stop_event=asyncio.Event())

    start_server.assert_not_awaited()
    mock_meter.disconnect.assert_awaited_once()
    mock_ess.update_poll_registers.assert_not_awaited()


@pytest.mark.asyncio
async def test_main_loop_disabled_does_nothing(config, mock_ess, mock_meter):
    config = AppConfig(
        controller=ControllerConfig(
            continuous_sell_to_grid_power=1000,
            sell_to_grid_power_limit=5000,
            enabled=False,
            cycle_seconds=0.01,
        ),
        ess=config.ess,
        meter=config.meter,
        api_token="",
        debug_level="INFO",
    )
    stop_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, stop_event.set)

    p_cfg, p_ess, p_meter, p_server = _patched(config, mock_ess, mock_meter)
    with p_cfg, p_ess, p_meter, p_server:
        await main(stop_event=stop_event)

    mock_ess.update_poll_registers.assert_not_awaited()
    mock_ess.set_active_power_equals.assert_not_called()
