"""Model list caching and tiered fallback"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Sequence

from core.telemetry import telemetry
from engines.protocol import ModelInfo

logger = logging.getLogger(__name__)

ModelLoader = Callable[[], Awaitable[List[ModelInfo]]]


class ModelCache:
    """Process-wide model list with TTL expiry.

    Lifecycle: empty -> populated (until ``ttl`` elapses) -> expired.
    ``refresh`` is guarded so concurrent callers share one in-flight load
    instead of racing each other.
    """

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._models: Optional[List[ModelInfo]] = None
        self._expires_at = 0.0
        self._inflight: Optional[asyncio.Future] = None

    def get(self) -> Optional[List[ModelInfo]]:
        """Cached models, or None when empty or expired"""
        if self._models is None or self._clock() >= self._expires_at:
            return None
        return list(self._models)

    def populate(self, models: Sequence[ModelInfo], ttl: Optional[float] = None) -> None:
        self._models = list(models)
        self._expires_at = self._clock() + (self.ttl if ttl is None else ttl)

    def invalidate(self) -> None:
        self._models = None
        self._expires_at = 0.0

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None

    async def refresh(self, loader: ModelLoader) -> List[ModelInfo]:
        """Load fresh models and populate the cache; joins a refresh already running"""
        if self._inflight is not None:
            return list(await asyncio.shield(self._inflight))

        self._inflight = asyncio.get_running_loop().create_future()
        inflight = self._inflight
        try:
            models = await loader()
            self.populate(models)
            inflight.set_result(models)
            return list(models)
        except asyncio.CancelledError:
            inflight.cancel()
            raise
        except Exception as e:
            inflight.set_exception(e)
            # Mark retrieved so an unobserved failure is not reported by the loop
            inflight.exception()
            raise
        finally:
            self._inflight = None

    async def get_or_refresh(self, loader: ModelLoader) -> List[ModelInfo]:
        cached = self.get()
        if cached is not None:
            return cached
        return await self.refresh(loader)


async def first_available(tiers: Sequence[ModelLoader], fallback: Sequence[ModelInfo], label: str) -> List[ModelInfo]:
    """Return the first non-empty tier, falling back to a hardcoded list.

    Tier failures are logged and never raised; sources are never merged.
    """
    for index, tier in enumerate(tiers, start=1):
        try:
            models = await tier()
        except Exception as e:
            logger.warning(f"{label} model tier {index} failed: {e}")
            continue
        if models:
            telemetry.log_metric("models.available", len(models), engine=label, tier=index)
            return list(models)
        logger.info(f"{label} model tier {index} returned no models")

    logger.info(f"{label} using hardcoded model list")
    return list(fallback)


def is_thinking_name(name: str) -> bool:
    return "thinking" in (name or "").lower()
