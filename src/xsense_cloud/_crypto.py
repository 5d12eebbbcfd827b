"""Internal signing helpers for X-Sense authentication and MQTT access."""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from urllib.parse import quote

from Crypto.Hash import HMAC, MD5, SHA256

from xsense_cloud._constants import (
    MQTT_PATH,
    MQTT_SERVICE,
    SECRET_HEADER_LEN,
    SECRET_TRAILER_LEN,
)
from xsense_cloud.errors import FormatError

_SIGV4_ALGORITHM = "AWS4-HMAC-SHA256"


def decode_shared_secret(encoded: str) -> bytes:
    """Recover the raw client secret from the value served by the bootstrap call.

    The server wraps the secret in a 4-byte header and a 1-byte trailer
    before base64-encoding it.
    """
    try:
        value = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise FormatError(f"Client secret is not valid base64: {e}") from e
    if len(value) < SECRET_HEADER_LEN + SECRET_TRAILER_LEN:
        raise FormatError(
            f"Client secret too short: {len(value)} bytes, "
            f"need at least {SECRET_HEADER_LEN + SECRET_TRAILER_LEN}."
        )
    return value[SECRET_HEADER_LEN : len(value) - SECRET_TRAILER_LEN]


def compute_challenge_signature(username: str, client_id: str, secret: bytes) -> str:
    """Cognito ``SECRET_HASH``: base64(HMAC-SHA256(secret, username + client_id))."""
    mac = HMAC.new(secret, (username + client_id).encode("utf-8"), digestmod=SHA256)
    return base64.b64encode(mac.digest()).decode("ascii")


def _mac_values(value: object) -> list[str]:
    """Render one payload value the way the app concatenates it."""
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and value and isinstance(value[0], str):
        return [str(v) for v in value]
    return [json.dumps(value, separators=(",", ":"), ensure_ascii=False)]


def compute_request_mac(fields: Mapping[str, object], secret: bytes) -> str:
    """Legacy anti-tamper ``mac`` field for signed API envelopes.

    Values are concatenated in the mapping's own key order (not sorted);
    ``None`` values are skipped entirely.  The MD5 digest covers the
    UTF-8 concatenation followed by the raw *secret*.
    """
    parts: list[str] = []
    for value in fields.values():
        if value is None:
            continue
        parts.extend(_mac_values(value))
    digest = MD5.new("".join(parts).encode("utf-8"))
    digest.update(secret)
    return digest.hexdigest()


def _hmac_sha256(key: bytes, msg: str) -> bytes:
    return HMAC.new(key, msg.encode("utf-8"), digestmod=SHA256).digest()


def _signing_key(secret_key: str, date_stamp: str, region: str, service: str) -> bytes:
    """Derive the SigV4 signing key."""
    k_date = _hmac_sha256(("AWS4" + secret_key).encode("utf-8"), date_stamp)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    return _hmac_sha256(k_service, "aws4_request")


def _aws_quote(value: str) -> str:
    # SigV4 requires every reserved character encoded, "/" included.
    return quote(value, safe="-_.~")


def presign_websocket_path(
    host: str,
    region: str,
    access_key_id: str,
    secret_access_key: str,
    session_token: str | None = None,
    *,
    now: datetime | None = None,
) -> str:
    """Return the SigV4-presigned ``/mqtt?...`` path for an AWS IoT WebSocket.

    The security token is appended after the signature; AWS IoT rejects
    the handshake when it is part of the canonical query string.
    """
    now = now or datetime.now(timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = now.strftime("%Y%m%d")
    credential_scope = f"{date_stamp}/{region}/{MQTT_SERVICE}/aws4_request"

    params = {
        "X-Amz-Algorithm": _SIGV4_ALGORITHM,
        "X-Amz-Credential": f"{access_key_id}/{credential_scope}",
        "X-Amz-Date": amz_date,
        "X-Amz-SignedHeaders": "host",
    }
    query = "&".join(f"{k}={_aws_quote(v)}" for k, v in sorted(params.items()))

    canonical_request = "\n".join(
        [
            "GET",
            MQTT_PATH,
            query,
            f"host:{host}\n",
            "host",
            SHA256.new(b"").hexdigest(),
        ]
    )
    string_to_sign = "\n".join(
        [
            _SIGV4_ALGORITHM,
            amz_date,
            credential_scope,
            SHA256.new(canonical_request.encode("utf-8")).hexdigest(),
        ]
    )
    key = _signing_key(secret_access_key, date_stamp, region, MQTT_SERVICE)
    signature = HMAC.new(key, string_to_sign.encode("utf-8"), digestmod=SHA256).hexdigest()

    path = f"{MQTT_PATH}?{query}&X-Amz-Signature={signature}"
    if session_token:
        path += f"&X-Amz-Security-Token={_aws_quote(session_token)}"
    return path
