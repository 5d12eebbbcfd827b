"""Wire protocols spoken by the two known X-Sense backend generations.

Both protocols POST JSON and wrap results in an envelope, but they differ
in envelope shape, success codes and how operations are addressed:

* :class:`SignedEnvelopeProtocol` -- a single ``/app`` endpoint, operations
  selected by ``bizCode``, payloads carrying an MD5 ``mac``, results in
  ``{reCode, reMsg, reData}``.  Used with Cognito sessions.
* :class:`BearerProtocol` -- one path per operation under ``/v1/user``,
  results in ``{code, msg, data}``, no payload signing.  Used with plain
  bearer tokens.
"""

from __future__ import annotations

import enum
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from xsense_cloud._constants import (
    API_HOST,
    APP_CODE,
    APP_HEADERS,
    APP_VERSION,
    BIZ_CLIENT_INFO,
    BIZ_HOUSES,
    BIZ_IOT_CREDENTIALS,
    BIZ_STATIONS,
    CLIENT_TYPE,
    RESULT_OK,
    UNAUTH_MAC,
)
from xsense_cloud._crypto import compute_request_mac
from xsense_cloud.errors import BootstrapError, FormatError

_AWS_IOT_REGION = re.compile(r"\.iot\.([a-z0-9-]+)\.amazonaws\.com$")


class Operation(enum.Enum):
    """Remote operations, independent of how a protocol addresses them."""

    CLIENT_INFO = "client_info"
    LOGIN = "login"
    REFRESH = "refresh"
    HOUSES = "houses"
    STATIONS = "stations"
    DEVICES = "devices"
    IOT_CREDENTIALS = "iot_credentials"


@dataclass(frozen=True)
class PreparedRequest:
    url: str
    body: dict[str, object]
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Result:
    ok: bool
    code: object
    message: str
    data: object


class Protocol:
    """Base class for backend protocols."""

    name = ""
    hierarchical = True
    """Whether devices are listed per house/station rather than as one flat list."""

    def __init__(self, api_host: str = API_HOST) -> None:
        self.api_host = api_host.rstrip("/")

    def prepare(
        self,
        operation: Operation,
        payload: Mapping[str, object],
        *,
        auth_headers: Mapping[str, str],
        mac_secret: bytes | None,
        signed: bool,
    ) -> PreparedRequest:
        raise NotImplementedError

    def parse(self, body: object) -> Result:
        raise NotImplementedError

    def broker(
        self, endpoint_override: str | None, host: str, region: str
    ) -> tuple[str, str]:
        """Return the ``(host, region)`` to open the MQTT WebSocket against."""
        return host, region


class SignedEnvelopeProtocol(Protocol):
    name = "cognito"

    _BIZ_CODES = {
        Operation.CLIENT_INFO: BIZ_CLIENT_INFO,
        Operation.IOT_CREDENTIALS: BIZ_IOT_CREDENTIALS,
        Operation.HOUSES: BIZ_HOUSES,
        Operation.STATIONS: BIZ_STATIONS,
    }

    def prepare(
        self,
        operation: Operation,
        payload: Mapping[str, object],
        *,
        auth_headers: Mapping[str, str],
        mac_secret: bytes | None,
        signed: bool,
    ) -> PreparedRequest:
        try:
            biz_code = self._BIZ_CODES[operation]
        except KeyError:
            raise ValueError(f"Operation {operation.value!r} is not served by {self.name}.") from None

        if signed:
            if mac_secret is None:
                raise BootstrapError("Client secret not available. Call bootstrap() first.")
            mac = compute_request_mac(payload, mac_secret)
        else:
            mac = UNAUTH_MAC

        body: dict[str, object] = {
            **payload,
            "clientType": CLIENT_TYPE,
            "mac": mac,
            "appVersion": APP_VERSION,
            "bizCode": biz_code,
            "appCode": APP_CODE,
        }
        return PreparedRequest(
            url=f"{self.api_host}/app",
            body=body,
            headers={**APP_HEADERS, **auth_headers},
        )

    def parse(self, body: object) -> Result:
        if not isinstance(body, dict):
            raise FormatError(f"Response is not a JSON object: {body!r}")
        code = body.get("reCode")
        return Result(
            ok=code == RESULT_OK,
            code=code,
            message=str(body.get("reMsg") or "unknown error"),
            data=body.get("reData"),
        )


class BearerProtocol(Protocol):
    name = "bearer"
    hierarchical = False

    _PATHS = {
        Operation.LOGIN: "login",
        Operation.REFRESH: "refreshToken",
        Operation.DEVICES: "getDeviceList",
        Operation.IOT_CREDENTIALS: "getIotCredential",
    }

    def prepare(
        self,
        operation: Operation,
        payload: Mapping[str, object],
        *,
        auth_headers: Mapping[str, str],
        mac_secret: bytes | None,
        signed: bool,
    ) -> PreparedRequest:
        try:
            path = self._PATHS[operation]
        except KeyError:
            raise ValueError(f"Operation {operation.value!r} is not served by {self.name}.") from None
        return PreparedRequest(
            url=f"{self.api_host}/v1/user/{path}",
            body=dict(payload),
            headers={**APP_HEADERS, **auth_headers},
        )

    def parse(self, body: object) -> Result:
        if not isinstance(body, dict):
            raise FormatError(f"Response is not a JSON object: {body!r}")
        code = body.get("code")
        return Result(
            ok=code == 0,
            code=code,
            message=str(body.get("msg") or "unknown error"),
            data=body.get("data"),
        )

    def broker(
        self, endpoint_override: str | None, host: str, region: str
    ) -> tuple[str, str]:
        # This backend documents its own broker per credential set.
        if not endpoint_override:
            return host, region
        override = re.sub(r"^wss?://", "", endpoint_override)
        override = re.sub(r"/?mqtt$", "", override)
        match = _AWS_IOT_REGION.search(override)
        return override, match.group(1) if match else region


PROTOCOLS: dict[str, type[Protocol]] = {
    SignedEnvelopeProtocol.name: SignedEnvelopeProtocol,
    BearerProtocol.name: BearerProtocol,
}


def get_protocol(name: str, api_host: str = API_HOST) -> Protocol:
    """Instantiate the protocol registered under *name*."""
    try:
        return PROTOCOLS[name](api_host)
    except KeyError:
        raise ValueError(
            f"Unknown protocol {name!r}. Expected one of: {', '.join(sorted(PROTOCOLS))}"
        ) from None
