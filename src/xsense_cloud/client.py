"""X-Sense cloud client.

The :class:`Client` wires one credential manager, one REST client, one
device directory and one realtime transport together for a home
automation bridge::

    import asyncio
    from xsense_cloud import Client, load_settings

    async with Client(load_settings()) as client:
        await client.login()
        for device in await client.get_device_list():
            print(device.device_name, device.device_model)

        client.on_message(lambda topic, payload: print(topic, payload))
        await client.connect_mqtt()
        await asyncio.Event().wait()
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from xsense_cloud.api import RestClient
from xsense_cloud.auth import (
    AuthState,
    BearerCredentialManager,
    CognitoCredentialManager,
    CredentialManager,
    Session,
)
from xsense_cloud.config import Settings, load_settings
from xsense_cloud.directory import DeviceDirectory, DeviceRecord
from xsense_cloud.protocol import Operation, Protocol, get_protocol
from xsense_cloud.realtime import MessageCallback, RealtimeTransport, TransportState


class Client:
    """X-Sense cloud client.

    Construct it from :class:`~xsense_cloud.config.Settings`, or use
    :meth:`from_config` to read the saved configuration file.
    """

    def __init__(
        self, settings: Settings, *, clock: Callable[[], datetime] | None = None
    ) -> None:
        self._settings = settings
        self._protocol = get_protocol(settings.protocol, settings.api_host)
        self._credentials = self._make_credentials(settings)
        self._rest = RestClient(
            self._protocol,
            self._credentials,
            timeout=settings.request_timeout,
            single_flight_refresh=settings.single_flight_refresh,
        )
        self._directory = DeviceDirectory(self._rest)
        transport_kwargs: dict[str, Any] = {
            "broker_host": settings.broker_host,
            "broker_region": settings.broker_region,
        }
        if clock is not None:
            transport_kwargs["clock"] = clock
        self._transport = RealtimeTransport(
            self._rest, self._directory, settings.username, **transport_kwargs
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_config(cls, path: Path | None = None) -> Client:
        """Build a client from the config file and ``XSENSE_*`` environment variables."""
        return cls(load_settings(path))

    def _make_credentials(self, settings: Settings) -> CredentialManager:
        manager = (
            CognitoCredentialManager
            if self._protocol.name == "cognito"
            else BearerCredentialManager
        )
        return manager(settings.username, settings.password, self._unauthenticated_call)

    async def _unauthenticated_call(
        self, operation: Operation, payload: Mapping[str, object]
    ) -> Any:
        # Resolved at call time: the REST client is created after the credentials.
        return await self._rest.call(operation, payload, requires_auth=False)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def protocol(self) -> Protocol:
        return self._protocol

    @property
    def credentials(self) -> CredentialManager:
        return self._credentials

    @property
    def transport(self) -> RealtimeTransport:
        return self._transport

    @property
    def session(self) -> Session | None:
        return self._credentials.session

    @property
    def auth_state(self) -> AuthState:
        return self._credentials.state

    @property
    def transport_state(self) -> TransportState:
        return self._transport.state

    @property
    def devices(self) -> list[DeviceRecord]:
        """Devices from the last successful :meth:`get_device_list` (stations included)."""
        return self._directory.last_known

    @property
    def sensors(self) -> list[DeviceRecord]:
        """Like :attr:`devices`, without the base stations themselves."""
        return [d for d in self._directory.last_known if not d.is_station]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def login(self) -> Session:
        """Bootstrap the client configuration (if needed) and log in."""
        await self._credentials.bootstrap()
        return await self._credentials.login()

    async def get_device_list(self) -> list[DeviceRecord]:
        """Fetch every device on the account, replacing the cached list."""
        return await self._directory.fetch_all()

    async def connect_mqtt(self) -> None:
        """Start receiving realtime events for the cached device list."""
        await self._transport.connect()

    async def disconnect_mqtt(self, clear_timers: bool = True) -> None:
        await self._transport.disconnect(clear_timers=clear_timers)

    def on_message(self, callback: MessageCallback) -> Callable[[], None]:
        """Register ``callback(topic, payload)``; returns a function that unregisters it."""
        return self._transport.add_listener(callback)

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.disconnect_mqtt()
