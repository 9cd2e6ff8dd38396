"""
Tier Module - Model Tier Selection

Chooses between the always-resident Scout tier and the on-demand Sovereign
tier, and loads tiers lazily with a single-flight guarantee.
"""

from .selector import TierSelector
from .types import PerformanceMode, Residency, ThermalState, Tier

__all__ = ["TierSelector", "Tier", "Residency", "ThermalState", "PerformanceMode"]
