"""
Model Tier Types

Tier identifiers, residency states and the thermal signal consumed by the
tier selector.
"""

from enum import Enum


class Tier(str, Enum):
    """Model tiers: Scout is small and always resident, Sovereign is large."""

    SCOUT = "scout"
    SOVEREIGN = "sovereign"


class Residency(str, Enum):
    """Load state of a single tier."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    RESIDENT = "resident"


class PerformanceMode(str, Enum):
    """Quality level the device can sustain at its current temperature."""

    SOVEREIGN = "sovereign"
    BALANCED = "balanced"
    SURVIVAL = "survival"


class ThermalState(str, Enum):
    """Device thermal pressure as reported by the platform."""

    NOMINAL = "nominal"
    FAIR = "fair"
    SERIOUS = "serious"
    CRITICAL = "critical"

    @property
    def performance_mode(self) -> PerformanceMode:
        # Downgrade at SERIOUS, before the OS starts throttling.
        if self in (ThermalState.NOMINAL, ThermalState.FAIR):
            return PerformanceMode.SOVEREIGN
        if self is ThermalState.SERIOUS:
            return PerformanceMode.BALANCED
        return PerformanceMode.SURVIVAL

    @property
    def allows_large_model(self) -> bool:
        return self.performance_mode is PerformanceMode.SOVEREIGN
