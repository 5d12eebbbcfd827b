"""REST client with transparent recovery from expired or revoked sessions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

from xsense_cloud._constants import REQUEST_TIMEOUT
from xsense_cloud.auth import CredentialManager
from xsense_cloud.errors import ApiError, FormatError, RefreshFailed
from xsense_cloud.protocol import Operation, Protocol

_LOGGER = logging.getLogger(__name__)


class RestClient:
    """Sends operations to the X-Sense API through a :class:`Protocol`.

    Authorization failures are handled locally with at most one retry per
    kind for each call:

    * HTTP 401 -- refresh the session, resend once.
    * a session-revoked result code -- log in from scratch, resend once.

    Every other non-success result raises :class:`ApiError`.

    By default each failing call runs its own refresh, even when several
    calls hit a 401 at once.  With *single_flight_refresh* concurrent calls
    share one in-flight refresh instead.
    """

    def __init__(
        self,
        protocol: Protocol,
        credentials: CredentialManager,
        *,
        timeout: float = REQUEST_TIMEOUT,
        single_flight_refresh: bool = False,
    ) -> None:
        self._protocol = protocol
        self._credentials = credentials
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._single_flight = single_flight_refresh
        self._refresh_task: asyncio.Task[Any] | None = None

    @property
    def protocol(self) -> Protocol:
        return self._protocol

    async def call(
        self,
        operation: Operation,
        payload: Mapping[str, object] | None = None,
        *,
        requires_auth: bool = True,
    ) -> Any:
        """Perform *operation* and return the unwrapped result data.

        Raises:
            ApiError: The API answered with a non-success result code.
            FormatError: The response body is not a JSON object.
            RefreshFailed: A 401 could not be recovered by refreshing.
            aiohttp.ClientResponseError: Any other HTTP error status.
        """
        fields = dict(payload or {})
        can_refresh = requires_auth
        can_reauthenticate = requires_auth

        async with aiohttp.ClientSession() as session:
            while True:
                request = self._protocol.prepare(
                    operation,
                    fields,
                    auth_headers=self._credentials.auth_headers() if requires_auth else {},
                    mac_secret=self._credentials.mac_secret,
                    signed=requires_auth,
                )
                async with session.post(
                    request.url,
                    json=request.body,
                    headers=request.headers,
                    timeout=self._timeout,
                ) as resp:
                    unauthorized = resp.status == 401 and can_refresh
                    if not unauthorized:
                        resp.raise_for_status()
                        try:
                            body = await resp.json(content_type=None)
                        except ValueError:
                            text = await resp.text()
                            raise FormatError(f"Response is not JSON: {text[:200]!r}") from None

                if unauthorized:
                    can_refresh = False
                    await self._refresh_after_unauthorized()
                    continue

                result = self._protocol.parse(body)
                if result.ok:
                    return result.data

                if can_reauthenticate:
                    can_reauthenticate = False
                    if await self._credentials.reauthenticate_if_session_revoked(result.code):
                        continue
                raise ApiError(result.code, result.message)

    async def _refresh_after_unauthorized(self) -> None:
        _LOGGER.info("Token expired, attempting to refresh...")
        try:
            if self._single_flight:
                await self._shared_refresh()
            else:
                await self._credentials.refresh()
        except RefreshFailed as e:
            _LOGGER.error("Failed to refresh token. Please re-login. %s", e)
            self._credentials.clear_session()
            raise
        _LOGGER.info("Token refreshed successfully.")

    async def _shared_refresh(self) -> None:
        """Join the in-flight refresh, or start one if none is running."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._credentials.refresh())
        await asyncio.shield(self._refresh_task)
