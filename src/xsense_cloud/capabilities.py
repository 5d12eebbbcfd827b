"""Sensor model capabilities -- which alarms each X-Sense model reports."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class Capability(str, enum.Enum):
    SMOKE = "smoke"
    CARBON_MONOXIDE = "co"


@dataclass(frozen=True)
class ModelCapabilities:
    """Capabilities shared by every model whose name starts with *prefix*."""

    prefix: str
    capabilities: tuple[Capability, ...]

    @property
    def label(self) -> str:
        """Human-readable summary (``smoke + co``)."""
        return " + ".join(c.value for c in self.capabilities)


_BOTH = (Capability.SMOKE, Capability.CARBON_MONOXIDE)

# Model prefixes from the X-Sense product range; first match wins.
MODEL_CAPABILITIES: list[ModelCapabilities] = [
    # Combination smoke + CO alarms
    ModelCapabilities("SC06-WX", _BOTH),
    ModelCapabilities("SC07-WX", _BOTH),
    ModelCapabilities("XP0A-MR", _BOTH),
    # CO alarms
    ModelCapabilities("XC0C-iR", (Capability.CARBON_MONOXIDE,)),
    ModelCapabilities("XC01-M", (Capability.CARBON_MONOXIDE,)),
    ModelCapabilities("XC04-WX", (Capability.CARBON_MONOXIDE,)),
    # Smoke alarms
    ModelCapabilities("XP02S-MR", (Capability.SMOKE,)),
    ModelCapabilities("XS01-M", (Capability.SMOKE,)),
    ModelCapabilities("XS01-WX", (Capability.SMOKE,)),
    ModelCapabilities("XS03-iWX", (Capability.SMOKE,)),
    ModelCapabilities("XS03-WX", (Capability.SMOKE,)),
    ModelCapabilities("XS0D-MR", (Capability.SMOKE,)),
]


def detect_capabilities(model: str) -> tuple[Capability, ...]:
    """Capabilities of *model*; unknown models are assumed to report both alarms."""
    for entry in MODEL_CAPABILITIES:
        if model.startswith(entry.prefix):
            return entry.capabilities
    return _BOTH
