"""Internal constants taken from the X-Sense Android app."""

from __future__ import annotations

from pathlib import Path

API_HOST = "https://api.x-sense-iot.com"

CLIENT_TYPE = "1"
APP_VERSION = "v1.22.0_20240914.1"
APP_CODE = "1220"

# Sent in place of a real MAC on calls made before the client secret is known.
UNAUTH_MAC = "abcdefg"

# bizCode values for the signed-envelope backend
BIZ_CLIENT_INFO = "101001"
BIZ_IOT_CREDENTIALS = "101003"
BIZ_HOUSES = "102007"
BIZ_STATIONS = "103007"

RESULT_OK = 200
# Result codes reporting that the server revoked the login session.
# Unconfirmed against the live backend; see DESIGN.md.
SESSION_REVOKED_CODES = frozenset({10000008})

# Shared-secret framing: 4-byte header, 1-byte trailer
SECRET_HEADER_LEN = 4
SECRET_TRAILER_LEN = 1

MQTT_HOST = "a3p56i1nw0xqwj-ats.iot.us-east-1.amazonaws.com"
MQTT_REGION = "us-east-1"
MQTT_PORT = 443
MQTT_PATH = "/mqtt"
MQTT_SERVICE = "iotdevicegateway"
MQTT_KEEPALIVE = 60
MQTT_CLIENT_PREFIX = "xsense-cloud_"

EVENT_TOPIC = "@xsense/events/1/{house_id}/{station_sn}"
SHADOW_TOPIC = "$aws/things/{station_sn}/shadow/name/+/update"

REQUEST_TIMEOUT = 15  # seconds, REST and MQTT connect
ROTATION_MARGIN = 300  # seconds before IoT credential expiry to reconnect
RECONNECT_INTERVAL = 5  # seconds between socket reconnection attempts

CONFIG_DIR = Path.home() / ".config" / "xsense-cloud"
CONFIG_FILE = CONFIG_DIR / "config.json"

APP_HEADERS = {
    "Content-Type": "application/json",
}
