import asyncio
import logging
import math
import time
from typing import Any, Optional

from aioesphomeapi import (
    APIClient,
    APIConnectionError,
    SensorInfo,
)

from delayed_sell_to_grid.errors import CollaboratorUnavailableError

# ESPHome object ids of the smart meter readings, in kW
IMPORT_OBJECT_ID = "momentary_active_import"
EXPORT_OBJECT_ID = "momentary_active_export"


class ESPHomeMeter:
    def __init__(
        self,
        host: str,
        port: int,
        encryption_key: str,
        reconnect_delay: float = 5.0,
        stale_timeout: float = 30.0,
        meter_id: str = "meter0",
    ):
        """
        Grid meter backed by an ESPHome smart meter reader.

        Keeps a persistent connection to the ESPHome device, subscribes to
        the import and export power sensors and serves the latest net grid
        power without blocking.

        Parameters
        ----------
        host : str
            IP address or hostname of the ESPHome device.

        port : int
            TCP port of the ESPHome API (typically 6053).

        encryption_key : str
            ESPHome Noise protocol encryption key.

        reconnect_delay : float, optional
            Seconds to wait before retrying a failed connection attempt.

        stale_timeout : float, optional
            Seconds without any state update before the stream is
            considered stale and the connection is rebuilt.

        meter_id : str, optional
            Component id used in error reports.
        """
        self.host = host
        self.port = port
        self.encryption_key = encryption_key
        self.reconnect_delay = reconnect_delay
        self.meter_id = meter_id

        self.client: APIClient | None = None
        # key -> (object_id, unit)
        self.meta: dict[int, tuple[str, str]] = {}
        self.states: dict[int, dict[str, Any]] = {}

        self._connected = False
        self._connecting_lock = asyncio.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

        self._stale_timeout = float(stale_timeout)
        self._last_rx_monotonic: float | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._reconnect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._connected

    # ---------- INTERNAL CALLBACK ----------
    def _on_state(self, msg: Any) -> None:
        """Callback for ESPHome state updates."""
        self._last_rx_monotonic = time.monotonic()

        key = getattr(msg, "key", None)
        if key not in self.meta:
            return

        value = msg.state
        if value is None or (isinstance(value, float) and math.isnan(value)):
            return

        self.states[key] = {"value": value, "last_updated": time.time()}

    # ---------- WATCHDOG ----------
    def _ensure_watchdog(self) -> None:
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.create_task(self._watchdog_loop())

    def _is_stale(self) -> bool:
        last = self._last_rx_monotonic
        return (
            self._connected
            and last is not None
            and (time.monotonic() - last) > self._stale_timeout
        )

    async def _watchdog_loop(self) -> None:
        poll_s = max(1.0, min(2.0, self._stale_timeout / 10.0))

        while True:
            await asyncio.sleep(poll_s)
            if not self._is_stale():
                continue

            async with self._reconnect_lock:
                # re-check inside lock
                if not self._is_stale():
                    continue
                self.logger.warning(
                    "ESPHome stream stale (no updates for > %.1fs). Reconnecting...",
                    self._stale_timeout,
                )
                await self._reconnect_once()

    async def _reconnect_once(self) -> None:
        await self._close_client()
        while not self._connected:
            try:
                await self.connect()
            except APIConnectionError as e:
                self.logger.warning(
                    "Reconnect failed, retrying in %ss, problem encountered %s",
                    self.reconnect_delay,
                    e,
                )
                await asyncio.sleep(self.reconnect_delay)

    # ---------- CONNECTION MANAGEMENT ----------
    async def connect(self) -> None:
        async with self._connecting_lock:
            if self._connected:
                return

            self.logger.info("Connecting to ESPHome meter %s...", self.meter_id)
            self.client = APIClient(
                self.host,
                self.port,
                password="",
                noise_psk=self.encryption_key,
            )

            try:
                await self.client.connect(login=True)
                await self._discover_entities()
                self.client.subscribe_states(self._on_state)

                self._connected = True
                self._last_rx_monotonic = time.monotonic()
                self._ensure_watchdog()

                self.logger.info("Connected. Discovered %d power sensors.", len(self.meta))
            except APIConnectionError:
                self._connected = False
                self.logger.error("ESPHome connection failed")
                raise

    async def _close_client(self) -> None:
        if self.client:
            self.logger.info("Disconnecting from ESPHome meter")
            await self.client.disconnect()
            self.client = None
        self._connected = False
        self._last_rx_monotonic = None

    async def disconnect(self) -> None:
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None
        await self._close_client()

    async def _discover_entities(self) -> None:
        entities, _ = await self.client.list_entities_services()
        self.meta.clear()
        self.states.clear()

        for ent in entities:
            if isinstance(ent, SensorInfo) and ent.object_id in (IMPORT_OBJECT_ID, EXPORT_OBJECT_ID):
                self.meta[ent.key] = (ent.object_id, ent.unit_of_measurement or "")

        if not self.meta:
            raise RuntimeError("No ESPHome grid power sensors found")

    # ---------- PUBLIC API ----------
    async def ensure_connected(self, timeout: float = 3.0) -> None:
        """Connect and wait until the power sensors have reported at least once."""
        while not self._connected:
            try:
                await self.connect()
            except APIConnectionError as e:
                self.logger.warning(
                    "Retrying ESPHome connection in %ss, problem encountered %s", self.reconnect_delay, e
                )
                await asyncio.sleep(self.reconnect_delay)

        start_time = asyncio.get_running_loop().time()
        while True:
            missing = [k for k in self.meta if k not in self.states]
            if not missing:
                break

            if asyncio.get_running_loop().time() - start_time > timeout:
                self.logger.warning("Some ESPHome sensors did not report in time: %s", missing)
                break

            await asyncio.sleep(0.05)

    def _reading_w(self, object_id: str) -> Optional[int]:
        key = next((k for k, v in self.meta.items() if v[0] == object_id), None)
        if key is None:
            return None
        state = self.states.get(key)
        if state is None:
            return None
        return int(round(float(state["value"]) * 1000))  # kW to W

    def get_active_power(self) -> Optional[int]:
        """
        Net power at the grid connection point in watts.

        Positive values are export, negative values are import. Returns
        None while either the import or the export sensor has no value.
        """
        if not self._connected:
            raise CollaboratorUnavailableError(
                "ESPHome device not connected. Call ensure_connected() first.", "meter", self.meter_id
            )

        grid_import = self._reading_w(IMPORT_OBJECT_ID)
        grid_export = self._reading_w(EXPORT_OBJECT_ID)
        if grid_import is None or grid_export is None:
            return None
        return grid_export - grid_import
