"""Credential lifecycle for the X-Sense cloud.

A :class:`CredentialManager` owns the single live :class:`Session` of the
process and knows how to create it (:meth:`~CredentialManager.login`),
extend it (:meth:`~CredentialManager.refresh`) and recreate it after the
server revokes it.  Two strategies exist, one per backend protocol:

* :class:`CognitoCredentialManager` -- fetches the app's Cognito client
  configuration, then runs the SRP password handshake.  The user pool
  client has a secret, so every ``InitiateAuth`` and
  ``RespondToAuthChallenge`` call must carry a ``SECRET_HASH``; a
  :class:`ChallengeSigner` attached to the boto3 client adds it.
* :class:`BearerCredentialManager` -- exchanges username/password for an
  opaque bearer token.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import enum
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Protocol

import aiohttp
import requests
from botocore.exceptions import BotoCoreError, ClientError
from pycognito import Cognito
from pycognito.exceptions import WarrantException

from xsense_cloud._constants import SESSION_REVOKED_CODES
from xsense_cloud._crypto import compute_challenge_signature, decode_shared_secret
from xsense_cloud.errors import (
    ApiError,
    AuthenticationFailed,
    BootstrapError,
    FormatError,
    RefreshFailed,
)
from xsense_cloud.protocol import Operation

_LOGGER = logging.getLogger(__name__)

UnauthenticatedCall = Callable[[Operation, Mapping[str, object]], Awaitable[Any]]

# pycognito fetches the pool JWKS with requests.
_COGNITO_ERRORS = (ClientError, BotoCoreError, WarrantException, requests.RequestException)


class AuthState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    CLIENT_INFO_FETCHED = "client_info_fetched"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ClientInfo:
    """Cognito app client configuration served by the bootstrap call."""

    client_id: str
    client_secret: str
    region: str
    user_pool_id: str

    @classmethod
    def from_api(cls, data: object) -> ClientInfo:
        if not isinstance(data, dict):
            raise FormatError(f"Unexpected client info payload: {data!r}")
        try:
            return cls(
                client_id=str(data["clientId"]),
                client_secret=str(data["clientSecret"]),
                region=str(data["cgtRegion"]),
                user_pool_id=str(data["userPoolId"]),
            )
        except KeyError as e:
            raise FormatError(f"Client info is missing {e.args[0]!r}") from None


@dataclass(frozen=True)
class Session:
    """The token set authorizing REST calls.

    Replaced as a whole on login and refresh; never updated in place.
    """

    id_token: str
    access_token: str
    refresh_token: str
    subject_id: str
    expires_at: float | None = None


class RequestInterceptor(Protocol):
    """Hook invoked with the parameters of every identity-provider call."""

    def before_send(self, operation: str, params: dict[str, Any]) -> None: ...


def attach_interceptor(client: Any, interceptor: RequestInterceptor) -> None:
    """Route a boto3 ``cognito-idp`` client's outgoing calls through *interceptor*.

    Uses botocore's ``before-parameter-build`` event, which fires with the
    mutable API parameters before they are serialized.
    """

    def handler(params: dict[str, Any], model: Any, **kwargs: Any) -> None:
        interceptor.before_send(model.name, params)

    client.meta.events.register("before-parameter-build.cognito-identity-provider", handler)


class ChallengeSigner:
    """Adds ``SECRET_HASH`` to Cognito auth calls for a secret-bound app client."""

    def __init__(
        self, client_id: str, secret: bytes, *, fallback_username: str | None = None
    ) -> None:
        self.client_id = client_id
        self._secret = secret
        self.fallback_username = fallback_username
        """Username for calls that carry none (``REFRESH_TOKEN_AUTH``)."""

    def before_send(self, operation: str, params: dict[str, Any]) -> None:
        if operation == "InitiateAuth":
            section = params.get("AuthParameters")
        elif operation == "RespondToAuthChallenge":
            section = params.get("ChallengeResponses")
        else:
            return
        if not isinstance(section, dict):
            return
        username = section.get("USERNAME") or self.fallback_username
        if not username:
            return
        section["SECRET_HASH"] = compute_challenge_signature(username, self.client_id, self._secret)


class CredentialManager:
    """Owns the process-wide session and its lifecycle.

    Args:
        username: Account email.
        password: Account password, kept for re-authentication after a
            server-side session revocation.
        call: Coroutine performing an unauthenticated API call.
        revoked_codes: API result codes meaning "session revoked".
    """

    def __init__(
        self,
        username: str,
        password: str,
        call: UnauthenticatedCall,
        *,
        revoked_codes: frozenset[object] = frozenset(),
    ) -> None:
        self._username = username
        self._password = password
        self._call = call
        self._revoked_codes = revoked_codes
        self._session: Session | None = None
        self.state = AuthState.UNINITIALIZED

    @property
    def username(self) -> str:
        return self._username

    @property
    def session(self) -> Session | None:
        """The live session, or ``None`` when logged out."""
        return self._session

    @property
    def mac_secret(self) -> bytes | None:
        """Secret for signing API payloads, if this backend signs them."""
        return None

    def auth_headers(self) -> dict[str, str]:
        raise NotImplementedError

    async def bootstrap(self) -> None:
        raise NotImplementedError

    async def login(self, username: str | None = None, password: str | None = None) -> Session:
        raise NotImplementedError

    async def refresh(self) -> Session:
        raise NotImplementedError

    def clear_session(self) -> None:
        """Discard the session; the next authenticated call needs a fresh login."""
        self._session = None
        if self.state is not AuthState.UNINITIALIZED:
            self.state = AuthState.EXPIRED

    async def reauthenticate_if_session_revoked(self, code: object) -> bool:
        """Log in again from scratch when *code* reports a revoked session.

        A revoked session has no usable refresh token server-side, so a
        refresh is pointless.  Returns ``True`` if a new login was done.
        """
        if code not in self._revoked_codes:
            return False
        _LOGGER.warning("Session revoked by server (code %s), logging in again.", code)
        self.clear_session()
        await self.login()
        return True

    def _remember(self, username: str | None, password: str | None) -> None:
        if username is not None:
            self._username = username
        if password is not None:
            self._password = password


class CognitoCredentialManager(CredentialManager):
    """Cognito SRP login with a client-secret challenge signature."""

    def __init__(
        self,
        username: str,
        password: str,
        call: UnauthenticatedCall,
        *,
        revoked_codes: frozenset[object] = SESSION_REVOKED_CODES,
    ) -> None:
        super().__init__(username, password, call, revoked_codes=revoked_codes)
        self._client_info: ClientInfo | None = None
        self._secret: bytes | None = None
        self._signer: ChallengeSigner | None = None
        self._cognito: Cognito | None = None

    @property
    def client_info(self) -> ClientInfo | None:
        return self._client_info

    @property
    def mac_secret(self) -> bytes | None:
        return self._secret

    def auth_headers(self) -> dict[str, str]:
        if self._session is None:
            return {}
        return {"Authorization": self._session.access_token}

    async def bootstrap(self) -> None:
        """Fetch and decode the Cognito app client configuration, once per process."""
        if self._client_info is not None:
            return
        _LOGGER.debug("Fetching client info...")
        try:
            data = await self._call(Operation.CLIENT_INFO, {})
            info = ClientInfo.from_api(data)
            secret = decode_shared_secret(info.client_secret)
        except (aiohttp.ClientError, asyncio.TimeoutError, ApiError, FormatError) as e:
            raise BootstrapError(f"Could not fetch client info: {e}") from e

        self._client_info = info
        self._secret = secret
        self._signer = ChallengeSigner(info.client_id, secret, fallback_username=self._username)
        self.state = AuthState.CLIENT_INFO_FETCHED

    async def login(self, username: str | None = None, password: str | None = None) -> Session:
        """Run the SRP handshake and install a new session.

        Raises:
            BootstrapError: If the client configuration cannot be fetched.
            AuthenticationFailed: If Cognito rejects the handshake.
        """
        self._remember(username, password)
        await self.bootstrap()

        self.state = AuthState.AUTHENTICATING
        try:
            cognito = await asyncio.to_thread(self._authenticate, self._username, self._password)
        except _COGNITO_ERRORS as e:
            self._session = None
            self._cognito = None
            self.state = AuthState.EXPIRED
            reason = _error_reason(e)
            _LOGGER.error("Cognito authentication failed: %s", reason)
            raise AuthenticationFailed(reason) from e

        self._cognito = cognito
        self._session = _session_from_tokens(
            cognito.id_token, cognito.access_token, cognito.refresh_token
        )
        claims = _decode_jwt_claims(cognito.id_token)
        assert self._signer is not None
        self._signer.fallback_username = str(claims.get("cognito:username") or self._username)
        self.state = AuthState.AUTHENTICATED
        _LOGGER.debug("Cognito authentication successful.")
        return self._session

    async def refresh(self) -> Session:
        """Exchange the refresh token for new id/access tokens.

        Raises:
            RefreshFailed: If there is no refresh token or Cognito rejects it.
                The session is cleared in that case.
        """
        session = self._session
        if session is None or not session.refresh_token or self._cognito is None:
            self.clear_session()
            raise RefreshFailed("No refresh token available.")

        self.state = AuthState.REFRESHING
        cognito = self._cognito
        try:
            await asyncio.to_thread(cognito.renew_access_token)
        except _COGNITO_ERRORS as e:
            self.clear_session()
            raise RefreshFailed(e) from e

        self._session = _session_from_tokens(
            cognito.id_token,
            cognito.access_token,
            cognito.refresh_token or session.refresh_token,
        )
        self.state = AuthState.AUTHENTICATED
        return self._session

    def clear_session(self) -> None:
        super().clear_session()
        self._cognito = None

    def _authenticate(self, username: str, password: str) -> Cognito:
        """Blocking SRP handshake (run in a worker thread)."""
        info = self._client_info
        assert info is not None and self._signer is not None
        cognito = Cognito(
            user_pool_id=info.user_pool_id,
            client_id=info.client_id,
            user_pool_region=info.region,
            username=username,
        )
        attach_interceptor(cognito.client, self._signer)
        cognito.authenticate(password=password)
        return cognito


class BearerCredentialManager(CredentialManager):
    """Username/password exchanged for an opaque bearer token."""

    def auth_headers(self) -> dict[str, str]:
        if self._session is None:
            return {}
        return {"token": self._session.access_token}

    async def bootstrap(self) -> None:
        if self.state is AuthState.UNINITIALIZED:
            self.state = AuthState.CLIENT_INFO_FETCHED

    async def login(self, username: str | None = None, password: str | None = None) -> Session:
        self._remember(username, password)
        await self.bootstrap()

        self.state = AuthState.AUTHENTICATING
        try:
            data = await self._call(
                Operation.LOGIN, {"username": self._username, "password": self._password}
            )
            session = _session_from_bearer(data)
        except (ApiError, FormatError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._session = None
            self.state = AuthState.EXPIRED
            _LOGGER.error("Login failed: %s", e)
            raise AuthenticationFailed(str(e)) from e

        self._session = session
        self.state = AuthState.AUTHENTICATED
        _LOGGER.debug("Bearer login successful.")
        return session

    async def refresh(self) -> Session:
        session = self._session
        if session is None or not session.refresh_token:
            self.clear_session()
            raise RefreshFailed("No refresh token available.")

        self.state = AuthState.REFRESHING
        try:
            data = await self._call(Operation.REFRESH, {"refreshToken": session.refresh_token})
            new_session = _session_from_bearer(data, refresh_token=session.refresh_token)
        except (ApiError, FormatError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.clear_session()
            raise RefreshFailed(e) from e

        self._session = new_session
        self.state = AuthState.AUTHENTICATED
        return new_session


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _decode_jwt_claims(token: str) -> dict[str, Any]:
    """Decode a JWT payload without verifying the signature.

    Returns an empty dict if the token cannot be decoded (e.g. not a JWT,
    malformed base64).
    """
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    # base64url padding: length must be a multiple of 4
    padded = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded))
    except (binascii.Error, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _session_from_tokens(id_token: str, access_token: str, refresh_token: str | None) -> Session:
    claims = _decode_jwt_claims(access_token) or _decode_jwt_claims(id_token)
    exp = claims.get("exp")
    return Session(
        id_token=id_token,
        access_token=access_token,
        refresh_token=refresh_token or "",
        subject_id=str(claims.get("sub", "")),
        expires_at=float(exp) if isinstance(exp, (int, float)) else None,
    )


def _session_from_bearer(data: object, *, refresh_token: str = "") -> Session:
    if not isinstance(data, dict) or not data.get("token"):
        raise FormatError(f"Login response carries no token: {data!r}")
    token = str(data["token"])
    session = _session_from_tokens(token, token, str(data.get("refreshToken") or refresh_token))
    if not session.subject_id and data.get("userId") is not None:
        session = replace(session, subject_id=str(data["userId"]))
    return session


def _error_reason(error: BaseException) -> str:
    if isinstance(error, ClientError):
        message = error.response.get("Error", {}).get("Message")
        if message:
            return str(message)
    return str(error) or type(error).__name__
