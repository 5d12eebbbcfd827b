"""Realtime alarm and state updates over AWS IoT MQTT-over-WebSockets.

The broker only accepts short-lived IoT credentials (about an hour).  The
:class:`RealtimeTransport` signs the WebSocket handshake with them and
arms a single rotation timer that reconnects with fresh credentials five
minutes before they expire.  Socket drops in between are retried with the
same credentials; only the timer renews them.

Topics are derived from the station serials of the last successfully
fetched device list, which a rotation reuses as-is.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import inspect
import json
import logging
import secrets
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import aiohttp
import aiomqtt

from xsense_cloud._constants import (
    EVENT_TOPIC,
    MQTT_CLIENT_PREFIX,
    MQTT_HOST,
    MQTT_KEEPALIVE,
    MQTT_PORT,
    MQTT_REGION,
    RECONNECT_INTERVAL,
    REQUEST_TIMEOUT,
    ROTATION_MARGIN,
    SHADOW_TOPIC,
)
from xsense_cloud._crypto import presign_websocket_path
from xsense_cloud.api import RestClient
from xsense_cloud.directory import DeviceDirectory
from xsense_cloud.errors import FormatError, TransportError, XSenseError
from xsense_cloud.protocol import Operation

_LOGGER = logging.getLogger(__name__)

_ROTATION_RETRY = 60  # seconds before retrying a failed credential rotation
_MALFORMED = object()

MessageCallback = Callable[[str, Any], Awaitable[None] | None]


class TransportState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ROTATION_PENDING = "rotation_pending"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class IotCredentials:
    """Temporary AWS credentials authorizing the broker connection only."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime
    endpoint: str | None = None
    """Broker host served with the credentials (bearer backend only)."""

    @classmethod
    def from_api(cls, data: object) -> IotCredentials:
        if not isinstance(data, dict):
            raise FormatError(f"Unexpected IoT credential payload: {data!r}")
        try:
            access_key = data.get("accessKeyId") or data["accessKey"]
            secret_key = data.get("secretAccessKey") or data["secretKey"]
            session_token = data["sessionToken"]
            expiration = _parse_expiration(data["expiration"])
        except KeyError as e:
            raise FormatError(f"IoT credentials are missing {e.args[0]!r}") from None
        endpoint = next(
            (
                data[k]
                for k in ("iotEndpoint", "iot_endpoint", "mqttServer", "mqtt_server", "host", "endpoint")
                if data.get(k)
            ),
            None,
        )
        return cls(
            access_key_id=str(access_key),
            secret_access_key=str(secret_key),
            session_token=str(session_token),
            expiration=expiration,
            endpoint=str(endpoint) if endpoint else None,
        )


def station_topics(station_sn: str) -> tuple[str, str]:
    """The alarm/event topic and the named-shadow update topic of one station."""
    house_id = station_sn.split("_")[0]
    return (
        EVENT_TOPIC.format(house_id=house_id, station_sn=station_sn),
        SHADOW_TOPIC.format(station_sn=station_sn),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RealtimeTransport:
    """Owns the single streaming connection and its rotation timer.

    Register handlers with :meth:`add_listener`; each receives
    ``(topic, payload)`` for every well-formed JSON message.  Handlers may
    be plain functions or coroutine functions.
    """

    def __init__(
        self,
        api: RestClient,
        directory: DeviceDirectory,
        username: str,
        *,
        broker_host: str = MQTT_HOST,
        broker_region: str = MQTT_REGION,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._api = api
        self._directory = directory
        self._username = username
        self._broker_host = broker_host
        self._broker_region = broker_region
        self._clock = clock
        self._listeners: list[MessageCallback] = []
        self._task: asyncio.Task[None] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._rotation_task: asyncio.Task[None] | None = None
        self._active_mqtt: aiomqtt.Client | None = None
        self._connect_lock = asyncio.Lock()
        self._connected = asyncio.Event()
        self._last_error: str | None = None
        self._stations: list[str] = []
        self.state = TransportState.DISCONNECTED
        self.rotation_delay: float | None = None
        """Seconds until the pending rotation, as computed when it was armed."""

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, callback: MessageCallback) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        self._listeners.append(callback)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(callback)

        return remove

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        """True while the broker connection is established."""
        return self._active_mqtt is not None

    @property
    def topics(self) -> list[str]:
        """Topics subscribed by the current connection, two per station."""
        return [t for sn in self._stations for t in station_topics(sn)]

    @property
    def rotation_pending(self) -> bool:
        return self._timer is not None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def fetch_credentials(self) -> IotCredentials:
        _LOGGER.debug("Fetching IoT credentials...")
        data = await self._api.call(Operation.IOT_CREDENTIALS, {"userName": self._username})
        creds = IotCredentials.from_api(data)
        _LOGGER.debug("Successfully fetched IoT credentials.")
        return creds

    async def connect(self) -> None:
        """Open the streaming connection with freshly fetched IoT credentials.

        A no-op when the device list is empty or a connection is already
        running.  Errors fetching credentials propagate.  Overlapping calls
        are serialized, so at most one connection is ever live.
        """
        async with self._connect_lock:
            await self._connect()

    async def _connect(self) -> None:
        stations = self._directory.station_serials
        if not stations:
            _LOGGER.warning("No devices available to connect to MQTT. Fetch the device list first.")
            return
        if self._task is not None and not self._task.done():
            _LOGGER.debug("MQTT client is already connected.")
            return

        if self.state is not TransportState.ROTATION_PENDING:
            self.state = TransportState.CONNECTING
        try:
            creds = await self.fetch_credentials()
        except Exception:
            self.state = TransportState.DISCONNECTED
            raise
        host, region = self._api.protocol.broker(
            creds.endpoint, self._broker_host, self._broker_region
        )

        delay = max(0.0, (creds.expiration - self._clock()).total_seconds() - ROTATION_MARGIN)
        self._arm_rotation(delay)
        _LOGGER.info("Scheduled MQTT credential refresh in %d minutes.", round(delay / 60))

        self._stations = stations
        identifier = f"{MQTT_CLIENT_PREFIX}{secrets.token_hex(4)}"
        _LOGGER.info("Connecting to MQTT broker at wss://%s/mqtt", host)
        self._task = asyncio.create_task(
            self._run(creds, host, region, identifier, list(stations))
        )

    async def rotate(self) -> None:
        """Reconnect with new IoT credentials, keeping the cached device list."""
        _LOGGER.info("Attempting to refresh MQTT connection credentials and reconnect...")
        self.state = TransportState.ROTATION_PENDING
        await self.disconnect(clear_timers=False)
        self.state = TransportState.ROTATION_PENDING
        try:
            await self.connect()
        except (XSenseError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            _LOGGER.error(
                "Failed to refresh MQTT credentials: %s. Retrying in %d seconds.",
                e,
                _ROTATION_RETRY,
            )
            self.state = TransportState.DISCONNECTED
            self._arm_rotation(_ROTATION_RETRY)

    async def disconnect(self, clear_timers: bool = True) -> None:
        """Close the live connection.

        With *clear_timers* ``False`` the pending rotation timer survives;
        the rotation path relies on this so that tearing down the old
        connection does not cancel the timer it is about to replace.
        """
        task, self._task = self._task, None
        if task is not None:
            _LOGGER.info("Disconnecting MQTT client.")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        if clear_timers:
            self._cancel_rotation()
            rotation = self._rotation_task
            if rotation is not None and rotation is not asyncio.current_task() and not rotation.done():
                rotation.cancel()
        self.state = TransportState.DISCONNECTED

    async def wait_connected(self, timeout: float = REQUEST_TIMEOUT) -> None:
        """Block until the broker connection is up.

        Raises:
            TransportError: Not connected within *timeout* seconds.
        """
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            reason = self._last_error or "timed out"
            raise TransportError(f"Could not connect to MQTT broker: {reason}") from None

    # ------------------------------------------------------------------
    # Rotation timer
    # ------------------------------------------------------------------

    def _arm_rotation(self, delay: float) -> None:
        self._cancel_rotation()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._on_rotation_due)
        self.rotation_delay = delay

    def _cancel_rotation(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.rotation_delay = None

    def _on_rotation_due(self) -> None:
        self._timer = None
        self._rotation_task = asyncio.ensure_future(self.rotate())

    # ------------------------------------------------------------------
    # Private MQTT methods
    # ------------------------------------------------------------------

    def _mqtt_params(
        self, creds: IotCredentials, host: str, region: str, identifier: str
    ) -> dict[str, Any]:
        """Derive aiomqtt.Client constructor kwargs for a signed WebSocket connection."""
        path = presign_websocket_path(
            host,
            region,
            creds.access_key_id,
            creds.secret_access_key,
            creds.session_token,
            now=self._clock(),
        )
        return {
            "hostname": host,
            "port": MQTT_PORT,
            "identifier": identifier,
            "transport": "websockets",
            "websocket_path": path,
            "tls_context": _make_tls_context(),
            "protocol": aiomqtt.ProtocolVersion.V311,
            "keepalive": MQTT_KEEPALIVE,
            "timeout": REQUEST_TIMEOUT,
        }

    async def _run(
        self,
        creds: IotCredentials,
        host: str,
        region: str,
        identifier: str,
        stations: list[str],
    ) -> None:
        """Persistent listener; reconnects on socket errors with the same credentials.

        The handshake is re-signed on every attempt because the SigV4
        timestamp must be current, but the credentials are not renewed
        here.
        """
        while True:
            try:
                params = self._mqtt_params(creds, host, region, identifier)
                async with aiomqtt.Client(**params) as mqtt_client:
                    self._active_mqtt = mqtt_client
                    self._connected.set()
                    self._last_error = None
                    self.state = TransportState.CONNECTED
                    _LOGGER.info("MQTT client connected.")
                    try:
                        await self._subscribe_all(mqtt_client, stations)
                        async for message in mqtt_client.messages:
                            await self._dispatch(str(message.topic), message.payload)
                    finally:
                        self._active_mqtt = None
                        self._connected.clear()
            except aiomqtt.MqttError as e:
                self._last_error = str(e)
                _LOGGER.error("MQTT client error: %s", e)
            else:
                _LOGGER.info("MQTT client connection closed.")
            self.state = TransportState.RECONNECTING
            _LOGGER.info("MQTT client reconnecting...")
            await asyncio.sleep(RECONNECT_INTERVAL)

    async def _subscribe_all(self, mqtt_client: aiomqtt.Client, stations: list[str]) -> None:
        for station_sn in stations:
            event_topic, shadow_topic = station_topics(station_sn)
            try:
                await mqtt_client.subscribe([(event_topic, 1), (shadow_topic, 1)])
            except aiomqtt.MqttError as e:
                _LOGGER.error("Failed to subscribe for station %s: %s", station_sn, e)
                continue
            _LOGGER.debug("Subscribed to %s and %s", event_topic, shadow_topic)

    async def _dispatch(self, topic: str, payload: object) -> None:
        _LOGGER.debug("MQTT message received on topic %s: %r", topic, payload)
        message = _parse_message(payload)
        if message is _MALFORMED:
            _LOGGER.error("Failed to parse MQTT message on %s: %r", topic, payload)
            return
        for callback in list(self._listeners):
            try:
                result = callback(topic, message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _LOGGER.exception("MQTT listener failed for topic %s", topic)


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _make_tls_context() -> ssl.SSLContext:
    """TLS context for the AWS IoT ATS endpoint (system trust store)."""
    return ssl.create_default_context()


def _parse_message(payload: object) -> Any:
    """Decode a JSON payload, or return ``_MALFORMED`` if it is not JSON."""
    if not isinstance(payload, (bytes, bytearray, str)):
        return _MALFORMED
    try:
        return json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _MALFORMED


def _parse_expiration(value: object) -> datetime:
    """Parse an ISO 8601 string or epoch (seconds or milliseconds) into an aware datetime."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise FormatError(f"Invalid credential expiration: {value!r}") from None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise FormatError(f"Invalid credential expiration: {value!r}")
