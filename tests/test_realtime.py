"""Tests for xsense_cloud.realtime."""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import aiomqtt
import pytest

from xsense_cloud._constants import MQTT_HOST, MQTT_PORT
from xsense_cloud.errors import ApiError, FormatError, TransportError
from xsense_cloud.protocol import BearerProtocol, Operation, SignedEnvelopeProtocol
from xsense_cloud.realtime import (
    IotCredentials,
    RealtimeTransport,
    TransportState,
    _parse_expiration,
    station_topics,
)

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def _creds(expires_in: float = 3600, **extra: Any) -> dict[str, Any]:
    return {
        "accessKeyId": "AKID",
        "secretAccessKey": "secret",
        "sessionToken": "session",
        "expiration": (NOW + timedelta(seconds=expires_in)).isoformat(),
        **extra,
    }


def _make_mock_mqtt_client(
    messages: list[tuple[str, bytes]] | None = None,
) -> tuple[AsyncMock, AsyncMock]:
    """Create a mock aiomqtt.Client that works as an async context manager.

    The message generator blocks forever after exhausting *messages*, like
    a live connection waiting for the next message.
    """
    mock_client = AsyncMock()
    mock_client.subscribe = AsyncMock()

    async def _message_generator() -> Any:
        for topic, payload in messages or []:
            msg = MagicMock()
            msg.topic = topic
            msg.payload = payload
            yield msg
        await asyncio.Event().wait()

    mock_client.messages = _message_generator()

    mock_cm = AsyncMock()
    mock_cm.__aenter__ = AsyncMock(return_value=mock_client)
    mock_cm.__aexit__ = AsyncMock(return_value=False)
    return mock_cm, mock_client


def _make_transport(
    stations: list[str] | None = None,
    *,
    creds: Any = None,
    protocol: Any = None,
) -> tuple[RealtimeTransport, MagicMock, MagicMock]:
    api = MagicMock()
    api.protocol = protocol or SignedEnvelopeProtocol()
    if isinstance(creds, list):
        api.call = AsyncMock(side_effect=creds)
    else:
        api.call = AsyncMock(return_value=creds or _creds())
    directory = MagicMock()
    directory.station_serials = ["H1_ST1"] if stations is None else stations
    directory.fetch_all = AsyncMock()
    transport = RealtimeTransport(api, directory, "user@example.com", clock=lambda: NOW)
    return transport, api, directory


async def _settle(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until *predicate* holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestTopics:
    def test_station_topics(self) -> None:
        assert station_topics("H1_ST1") == (
            "@xsense/events/1/H1/H1_ST1",
            "$aws/things/H1_ST1/shadow/name/+/update",
        )

    def test_serial_without_prefix(self) -> None:
        assert station_topics("ST1")[0] == "@xsense/events/1/ST1/ST1"


class TestIotCredentials:
    def test_from_api(self) -> None:
        creds = IotCredentials.from_api(_creds())
        assert creds.access_key_id == "AKID"
        assert creds.expiration == NOW + timedelta(hours=1)
        assert creds.endpoint is None

    def test_alternate_key_names(self) -> None:
        creds = IotCredentials.from_api(
            {
                "accessKey": "A",
                "secretKey": "S",
                "sessionToken": "T",
                "expiration": 1714568400000,
                "iotEndpoint": "x.iot.eu-west-1.amazonaws.com",
            }
        )
        assert creds.access_key_id == "A"
        assert creds.expiration == datetime(2024, 5, 1, 13, 0, tzinfo=timezone.utc)
        assert creds.endpoint == "x.iot.eu-west-1.amazonaws.com"

    def test_missing_key(self) -> None:
        with pytest.raises(FormatError, match="sessionToken"):
            IotCredentials.from_api({"accessKeyId": "A", "secretAccessKey": "S", "expiration": 0})

    def test_bad_expiration(self) -> None:
        with pytest.raises(FormatError):
            _parse_expiration("tomorrow")

    def test_epoch_seconds_and_naive_iso(self) -> None:
        assert _parse_expiration(1714568400) == datetime(2024, 5, 1, 13, 0, tzinfo=timezone.utc)
        assert _parse_expiration("2024-05-01T13:00:00") == datetime(
            2024, 5, 1, 13, 0, tzinfo=timezone.utc
        )


class TestConnect:
    async def test_empty_device_list_skips_connect(self, caplog: pytest.LogCaptureFixture) -> None:
        transport, api, _ = _make_transport(stations=[])
        with caplog.at_level(logging.WARNING), patch(
            "xsense_cloud.realtime.aiomqtt.Client"
        ) as mock_cls:
            await transport.connect()

        mock_cls.assert_not_called()
        api.call.assert_not_awaited()
        assert "No devices available" in caplog.text
        assert transport.state is TransportState.DISCONNECTED
        assert not transport.rotation_pending

    async def test_fetches_credentials_and_subscribes(self) -> None:
        transport, api, _ = _make_transport(["H1_ST1", "H2_ST2"])
        mock_cm, mock_client = _make_mock_mqtt_client()

        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm) as mock_cls:
            await transport.connect()
            await _settle(lambda: mock_client.subscribe.await_count == 2)

            api.call.assert_awaited_once_with(
                Operation.IOT_CREDENTIALS, {"userName": "user@example.com"}
            )
            assert transport.is_connected
            assert transport.state is TransportState.CONNECTED
            subscribed = [c.args[0] for c in mock_client.subscribe.await_args_list]
            assert subscribed == [
                [("@xsense/events/1/H1/H1_ST1", 1), ("$aws/things/H1_ST1/shadow/name/+/update", 1)],
                [("@xsense/events/1/H2/H2_ST2", 1), ("$aws/things/H2_ST2/shadow/name/+/update", 1)],
            ]
            assert transport.topics == [
                "@xsense/events/1/H1/H1_ST1",
                "$aws/things/H1_ST1/shadow/name/+/update",
                "@xsense/events/1/H2/H2_ST2",
                "$aws/things/H2_ST2/shadow/name/+/update",
            ]
            await transport.disconnect()

        kwargs = mock_cls.call_args.kwargs
        assert kwargs["hostname"] == MQTT_HOST
        assert kwargs["port"] == MQTT_PORT
        assert kwargs["transport"] == "websockets"
        assert kwargs["websocket_path"].startswith("/mqtt?X-Amz-Algorithm=AWS4-HMAC-SHA256")
        assert "%2Fus-east-1%2Fiotdevicegateway%2F" in kwargs["websocket_path"]
        assert kwargs["websocket_path"].endswith("X-Amz-Security-Token=session")
        assert kwargs["identifier"].startswith("xsense-cloud_")
        assert kwargs["protocol"] is aiomqtt.ProtocolVersion.V311
        assert isinstance(kwargs["tls_context"], ssl.SSLContext)

    async def test_already_connected_is_noop(self) -> None:
        transport, api, _ = _make_transport()
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm):
            await transport.connect()
            await transport.connect()
            assert api.call.await_count == 1
            await transport.disconnect()

    async def test_overlapping_connects_open_one_connection(self) -> None:
        transport, api, _ = _make_transport()

        async def slow_credentials(*args: Any) -> dict[str, Any]:
            await asyncio.sleep(0.01)
            return _creds()

        api.call = AsyncMock(side_effect=slow_credentials)
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm) as mock_cls:
            await asyncio.gather(transport.connect(), transport.connect())
            await _settle(lambda: transport.is_connected)
            await asyncio.sleep(0.02)
            assert api.call.await_count == 1
            assert mock_cls.call_count == 1
            task = transport._task
            await transport.disconnect()

        assert task is not None and task.done()
        assert not transport.is_connected

    async def test_credential_failure_propagates(self) -> None:
        transport, _, _ = _make_transport(creds=[ApiError(500, "boom")])
        with patch("xsense_cloud.realtime.aiomqtt.Client") as mock_cls, pytest.raises(ApiError):
            await transport.connect()
        mock_cls.assert_not_called()
        assert transport.state is TransportState.DISCONNECTED
        assert not transport.rotation_pending

    async def test_bearer_broker_override(self) -> None:
        creds = _creds(iotEndpoint="wss://abc-ats.iot.eu-west-1.amazonaws.com/mqtt")
        transport, _, _ = _make_transport(creds=creds, protocol=BearerProtocol())
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm) as mock_cls:
            await transport.connect()
            await _settle(lambda: transport.is_connected)
            await transport.disconnect()

        kwargs = mock_cls.call_args.kwargs
        assert kwargs["hostname"] == "abc-ats.iot.eu-west-1.amazonaws.com"
        assert "%2Feu-west-1%2Fiotdevicegateway%2F" in kwargs["websocket_path"]

    async def test_endpoint_ignored_by_signed_envelope_backend(self) -> None:
        creds = _creds(iotEndpoint="other.iot.eu-west-1.amazonaws.com")
        transport, _, _ = _make_transport(creds=creds)
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm) as mock_cls:
            await transport.connect()
            await _settle(lambda: transport.is_connected)
            await transport.disconnect()
        assert mock_cls.call_args.kwargs["hostname"] == MQTT_HOST

    async def test_socket_error_reconnects_with_same_credentials(self) -> None:
        transport, api, _ = _make_transport()
        failing_cm = AsyncMock()
        failing_cm.__aenter__ = AsyncMock(side_effect=aiomqtt.MqttError("connection refused"))
        failing_cm.__aexit__ = AsyncMock(return_value=False)
        mock_cm, _ = _make_mock_mqtt_client()

        with patch("xsense_cloud.realtime.RECONNECT_INTERVAL", 0), patch(
            "xsense_cloud.realtime.aiomqtt.Client", side_effect=[failing_cm, mock_cm]
        ) as mock_cls:
            await transport.connect()
            await _settle(lambda: transport.is_connected)
            assert mock_cls.call_count == 2
            assert api.call.await_count == 1
            await transport.disconnect()

    async def test_wait_connected(self) -> None:
        transport, _, _ = _make_transport()
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm):
            await transport.connect()
            await transport.wait_connected(timeout=1)
            await transport.disconnect()

    async def test_wait_connected_reports_last_error(self) -> None:
        transport, _, _ = _make_transport()
        failing_cm = AsyncMock()
        failing_cm.__aenter__ = AsyncMock(side_effect=aiomqtt.MqttError("not authorized"))
        failing_cm.__aexit__ = AsyncMock(return_value=False)

        with patch("xsense_cloud.realtime.RECONNECT_INTERVAL", 0.01), patch(
            "xsense_cloud.realtime.aiomqtt.Client", return_value=failing_cm
        ):
            await transport.connect()
            with pytest.raises(TransportError, match="not authorized"):
                await transport.wait_connected(timeout=0.1)
            await transport.disconnect()


class TestRotation:
    async def test_rotation_scheduled_five_minutes_before_expiry(self) -> None:
        transport, _, _ = _make_transport(creds=_creds(expires_in=3600))
        mock_cm, _ = _make_mock_mqtt_client()
        loop = asyncio.get_running_loop()

        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm):
            await transport.connect()
            assert transport.rotation_delay == 3300
            assert transport._timer is not None
            assert transport._timer.when() - loop.time() == pytest.approx(3300, abs=1)
            await transport.disconnect()

        assert not transport.rotation_pending

    async def test_rotation_delay_never_negative(self) -> None:
        transport, _, _ = _make_transport(creds=[_creds(expires_in=60), _creds(expires_in=3600)])
        with patch(
            "xsense_cloud.realtime.aiomqtt.Client",
            side_effect=[_make_mock_mqtt_client()[0], _make_mock_mqtt_client()[0]],
        ):
            await transport.connect()
            # Already inside the margin: the timer fires right away and rotates.
            await _settle(lambda: transport.rotation_delay == 3300)
            await transport.disconnect()

    async def test_rotate_resubscribes_without_refetching_devices(self) -> None:
        transport, api, directory = _make_transport(["H1_ST1", "H2_ST2"])
        cm1, client1 = _make_mock_mqtt_client()
        cm2, client2 = _make_mock_mqtt_client()

        with patch("xsense_cloud.realtime.aiomqtt.Client", side_effect=[cm1, cm2]):
            await transport.connect()
            await _settle(lambda: client1.subscribe.await_count == 2)
            topics_before = transport.topics

            await transport.rotate()
            await _settle(lambda: client2.subscribe.await_count == 2)

            assert transport.topics == topics_before
            assert [c.args for c in client2.subscribe.await_args_list] == [
                c.args for c in client1.subscribe.await_args_list
            ]
            assert api.call.await_count == 2
            directory.fetch_all.assert_not_awaited()
            assert transport.rotation_pending
            await transport.disconnect()

    async def test_rotation_failure_retries_later(self) -> None:
        transport, _, _ = _make_transport(creds=[_creds(), ApiError(500, "boom")])
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm):
            await transport.connect()
            await transport.rotate()

        assert transport.state is TransportState.DISCONNECTED
        assert transport.rotation_pending
        assert transport.rotation_delay == 60
        await transport.disconnect()

    async def test_disconnect_without_clearing_timers_keeps_timer(self) -> None:
        transport, _, _ = _make_transport()
        mock_cm, _ = _make_mock_mqtt_client()
        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm):
            await transport.connect()
            await transport.disconnect(clear_timers=False)
            assert not transport.is_connected
            assert transport.rotation_pending

            await transport.disconnect()
            assert not transport.rotation_pending

    async def test_rearming_replaces_existing_timer(self) -> None:
        transport, _, _ = _make_transport()
        transport._arm_rotation(100)
        first = transport._timer
        transport._arm_rotation(200)
        assert first is not None and first.cancelled()
        assert transport.rotation_delay == 200
        await transport.disconnect()


class TestDispatch:
    async def test_forwards_parsed_messages(self) -> None:
        transport, _, _ = _make_transport()
        payload = {"alarmStatus": 1, "deviceSn": "D1"}
        mock_cm, _ = _make_mock_mqtt_client(
            [("@xsense/events/1/H1/H1_ST1", json.dumps(payload).encode())]
        )
        received: list[tuple[str, Any]] = []
        transport.add_listener(lambda topic, data: received.append((topic, data)))

        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm):
            await transport.connect()
            await _settle(lambda: len(received) == 1)
            await transport.disconnect()

        assert received == [("@xsense/events/1/H1/H1_ST1", payload)]

    async def test_malformed_payload_dropped(self, caplog: pytest.LogCaptureFixture) -> None:
        transport, _, _ = _make_transport()
        mock_cm, _ = _make_mock_mqtt_client(
            [("t/bad", b"{not json"), ("t/good", b'{"ok": true}')]
        )
        received: list[tuple[str, Any]] = []
        transport.add_listener(lambda topic, data: received.append((topic, data)))

        with caplog.at_level(logging.ERROR), patch(
            "xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm
        ):
            await transport.connect()
            await _settle(lambda: len(received) == 1)
            assert transport.is_connected
            await transport.disconnect()

        assert received == [("t/good", {"ok": True})]
        assert "Failed to parse MQTT message on t/bad" in caplog.text

    async def test_json_null_payload_forwarded(self) -> None:
        transport, _, _ = _make_transport()
        mock_cm, _ = _make_mock_mqtt_client([("t/null", b"null"), ("t/zero", b"0")])
        received: list[tuple[str, Any]] = []
        transport.add_listener(lambda topic, data: received.append((topic, data)))

        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm):
            await transport.connect()
            await _settle(lambda: len(received) == 2)
            await transport.disconnect()

        assert received == [("t/null", None), ("t/zero", 0)]

    async def test_async_listener_and_failing_listener(self) -> None:
        transport, _, _ = _make_transport()
        mock_cm, _ = _make_mock_mqtt_client([("t", b"[1, 2]")])
        received: list[Any] = []

        def broken(topic: str, data: Any) -> None:
            raise RuntimeError("listener bug")

        async def collect(topic: str, data: Any) -> None:
            received.append(data)

        transport.add_listener(broken)
        transport.add_listener(collect)

        with patch("xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm):
            await transport.connect()
            await _settle(lambda: received == [[1, 2]])
            await transport.disconnect()

    async def test_remove_listener(self) -> None:
        transport, _, _ = _make_transport()
        received: list[Any] = []
        remove = transport.add_listener(lambda topic, data: received.append(data))
        remove()
        remove()
        await transport._dispatch("t", b"{}")
        assert received == []

    async def test_subscription_failure_is_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        transport, _, _ = _make_transport(["H1_ST1", "H2_ST2"])
        mock_cm, mock_client = _make_mock_mqtt_client()
        mock_client.subscribe = AsyncMock(side_effect=[aiomqtt.MqttError("denied"), None])

        with caplog.at_level(logging.ERROR), patch(
            "xsense_cloud.realtime.aiomqtt.Client", return_value=mock_cm
        ):
            await transport.connect()
            await _settle(lambda: mock_client.subscribe.await_count == 2)
            assert transport.is_connected
            await transport.disconnect()

        assert "Failed to subscribe for station H1_ST1" in caplog.text
        second = mock_client.subscribe.await_args_list[1].args[0]
        assert second[0][0] == "@xsense/events/1/H2/H2_ST2"
