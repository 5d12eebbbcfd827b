"""Async Python client for the X-Sense smoke and CO alarm cloud."""

from xsense_cloud.capabilities import Capability, detect_capabilities
from xsense_cloud.client import Client
from xsense_cloud.config import Settings, load_settings
from xsense_cloud.directory import DeviceRecord
from xsense_cloud.errors import (
    ApiError,
    AuthenticationFailed,
    BootstrapError,
    FormatError,
    RefreshFailed,
    TransportError,
    XSenseError,
)

__all__ = [
    "ApiError",
    "AuthenticationFailed",
    "BootstrapError",
    "Capability",
    "Client",
    "DeviceRecord",
    "FormatError",
    "RefreshFailed",
    "Settings",
    "TransportError",
    "XSenseError",
    "detect_capabilities",
    "load_settings",
]
