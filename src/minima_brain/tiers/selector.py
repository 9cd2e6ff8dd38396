"""
Model Tier Selection and Lazy Loading

Scout (small, fast) is loaded at startup and stays resident. Sovereign (large,
accurate) is loaded on demand the first time an entitled user asks for it
while the device is cool enough. Loads are single-flight: concurrent requests
for the same tier join the one in-flight load.

The selector never blocks the current turn on a Sovereign load. If Sovereign
is wanted but not resident, the turn runs on Scout and the load starts in the
background for subsequent turns.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from ..errors import LoadFailure
from ..specdec.interfaces import ModelLoader
from .hardware import has_memory_for
from .types import Residency, ThermalState, Tier

logger = logging.getLogger(__name__)


class TierSelector:
    """Tracks residency per tier and picks the best tier for each turn."""

    def __init__(
        self,
        loader: ModelLoader,
        load_timeout: Optional[float] = None,
        min_available_memory_mb: Optional[float] = None,
    ):
        """
        Initialize the tier selector.

        Args:
            loader: Capability that loads a tier into memory
            load_timeout: Deadline in seconds for a single load (None = no limit)
            min_available_memory_mb: Refuse to load Sovereign when the host has
                                     less available memory than this
        """
        self.loader = loader
        self.load_timeout = load_timeout
        self.min_available_memory_mb = min_available_memory_mb

        self._residency: Dict[Tier, Residency] = {
            tier: Residency.UNLOADED for tier in Tier
        }
        self._inflight: Dict[Tier, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

        self.load_calls: Dict[Tier, int] = {tier: 0 for tier in Tier}
        self.last_errors: Dict[Tier, Optional[str]] = {tier: None for tier in Tier}

    def residency(self, tier: Tier) -> Residency:
        return self._residency[tier]

    def is_resident(self, tier: Tier) -> bool:
        return self._residency[tier] is Residency.RESIDENT

    def warm_up(self) -> "asyncio.Future[None]":
        """
        Begin loading Scout in the background.

        Idempotent: joins an in-flight load and is a no-op once resident.

        Returns:
            Awaitable that completes when Scout is resident (raises LoadFailure
            if the load fails)
        """
        if self.is_resident(Tier.SCOUT):
            done = asyncio.get_running_loop().create_future()
            done.set_result(None)
            return done
        return self._start_load(Tier.SCOUT)

    async def ensure_sovereign(self) -> None:
        """
        Make Sovereign resident, joining any in-flight load.

        Raises:
            LoadFailure: If the load fails; every caller joined on that load
                         receives the same failure
        """
        await self.ensure_tier(Tier.SOVEREIGN)

    async def ensure_tier(self, tier: Tier) -> None:
        if self.is_resident(tier):
            return
        # Shielded so a cancelled caller does not abort the shared load.
        await asyncio.shield(self._start_load(tier))

    def best_available_tier(
        self, entitled: bool, thermal_allows_large: bool
    ) -> Tier:
        """
        Choose the tier for the current turn without waiting on any load.

        Must be called from a running event loop.

        Args:
            entitled: Whether the user is entitled to the large tier
            thermal_allows_large: Whether the device may run the large tier

        Returns:
            SOVEREIGN if allowed and resident, otherwise SCOUT
        """
        if not (entitled and thermal_allows_large):
            return Tier.SCOUT

        if self.is_resident(Tier.SOVEREIGN):
            return Tier.SOVEREIGN

        if Tier.SOVEREIGN not in self._inflight:
            logger.info("Sovereign requested but not resident, loading for next turn")
        self._start_load(Tier.SOVEREIGN)
        return Tier.SCOUT

    def select_for_thermal(self, entitled: bool, thermal: ThermalState) -> Tier:
        return self.best_available_tier(entitled, thermal.allows_large_model)

    def get_status(self) -> Dict[str, Any]:
        """Get residency and load statistics."""
        return {
            tier.value: {
                "residency": self._residency[tier].value,
                "load_calls": self.load_calls[tier],
                "last_error": self.last_errors[tier],
            }
            for tier in Tier
        }

    def _start_load(self, tier: Tier) -> asyncio.Task:
        task = self._inflight.get(tier)
        if task is not None:
            return task

        self._residency[tier] = Residency.LOADING
        task = asyncio.get_running_loop().create_task(self._load(tier))
        self._inflight[tier] = task
        self._background.add(task)
        task.add_done_callback(self._on_load_done)
        return task

    def _on_load_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        # Retrieve the exception so background loads never warn as unobserved.
        error = task.exception()
        if error is not None:
            logger.warning(f"Background load finished with error: {error}")

    async def _load(self, tier: Tier) -> None:
        logger.info(f"Loading {tier.value} tier...")
        try:
            if (
                tier is Tier.SOVEREIGN
                and self.min_available_memory_mb is not None
                and not has_memory_for(self.min_available_memory_mb)
            ):
                raise LoadFailure(tier.value, "insufficient memory")

            self.load_calls[tier] += 1
            ok = await asyncio.wait_for(
                self.loader.load(tier), timeout=self.load_timeout
            )
            if not ok:
                raise LoadFailure(tier.value, "loader reported failure")

            self._residency[tier] = Residency.RESIDENT
            self.last_errors[tier] = None
            logger.info(f"{tier.value} tier ready")

        except asyncio.CancelledError:
            self._residency[tier] = Residency.UNLOADED
            raise
        except LoadFailure as e:
            self._mark_failed(tier, e)
            raise
        except asyncio.TimeoutError as e:
            failure = LoadFailure(tier.value, f"timed out after {self.load_timeout}s")
            self._mark_failed(tier, failure)
            raise failure from e
        except Exception as e:
            failure = LoadFailure(tier.value, str(e))
            self._mark_failed(tier, failure)
            raise failure from e
        finally:
            self._inflight.pop(tier, None)

    def _mark_failed(self, tier: Tier, failure: LoadFailure) -> None:
        self._residency[tier] = Residency.UNLOADED
        self.last_errors[tier] = str(failure)
        logger.error(str(failure))
