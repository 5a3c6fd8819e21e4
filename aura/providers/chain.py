"""Ordered fallback chain over provider tiers."""

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Tuple, Type, TypeVar
import structlog


logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class TierFailure:
    """A tier that was attempted and did not produce an accepted value."""
    tier: str
    error: BaseException

    def describe(self) -> str:
        return f"{self.tier}: {type(self.error).__name__}: {self.error}"


@dataclass
class ChainResult(Generic[T]):
    """The value of the first tier that succeeded, plus the failures before it."""
    value: T
    tier: str
    failures: List[TierFailure] = field(default_factory=list)
    latency_ms: float = 0.0

    @property
    def degraded(self) -> bool:
        return bool(self.failures)


@dataclass
class Tier(Generic[T]):
    """A named attempt in a fallback chain."""
    name: str
    call: Callable[..., Awaitable[T]]
    accept: Optional[Callable[[T], bool]] = None


class RejectedResult(Exception):
    """A tier returned a value that failed its acceptance check."""


class ChainExhaustedError(Exception):
    """Every tier failed; only raised for chains without an infallible last tier."""

    def __init__(self, chain: str, failures: List[TierFailure]):
        super().__init__(f"{chain}: all {len(failures)} tiers failed")
        self.chain = chain
        self.failures = failures


class FallbackChain(Generic[T]):
    """
    Try each tier in order until one produces an accepted value.

    Failures are captured per tier and logged, then the next tier is tried.
    Exception types listed in ``stop_on`` are not treated as failures and
    propagate to the caller immediately.
    """

    def __init__(
        self,
        name: str,
        tiers: List[Tier[T]],
        stop_on: Tuple[Type[BaseException], ...] = (),
        metrics: Any = None,
    ):
        if not tiers:
            raise ValueError("A fallback chain needs at least one tier")
        self.name = name
        self.tiers = list(tiers)
        self.stop_on = stop_on
        self.metrics = metrics

    @property
    def tier_names(self) -> List[str]:
        return [tier.name for tier in self.tiers]

    async def run(self, *args, **kwargs) -> ChainResult[T]:
        """Run the chain with the given arguments passed to every tier."""
        failures: List[TierFailure] = []
        start = time.perf_counter()

        for tier in self.tiers:
            try:
                value = await tier.call(*args, **kwargs)
                if tier.accept is not None and not tier.accept(value):
                    raise RejectedResult(f"{tier.name} returned an unacceptable result")
            except self.stop_on:
                raise
            except Exception as e:
                failure = TierFailure(tier=tier.name, error=e)
                failures.append(failure)
                logger.warning("Provider tier failed, falling through",
                               chain=self.name,
                               tier=tier.name,
                               error=str(e),
                               error_type=type(e).__name__)
                if self.metrics is not None:
                    self.metrics.record_fallback(self.name, tier.name, str(e))
                continue

            latency_ms = (time.perf_counter() - start) * 1000
            if failures:
                logger.info("Chain served by fallback tier",
                            chain=self.name,
                            tier=tier.name,
                            failures=[f.describe() for f in failures])
            if self.metrics is not None:
                self.metrics.record_served(self.name, tier.name)
            return ChainResult(value=value, tier=tier.name, failures=failures, latency_ms=latency_ms)

        logger.error("All provider tiers failed", chain=self.name, tiers=self.tier_names)
        raise ChainExhaustedError(self.name, failures)
