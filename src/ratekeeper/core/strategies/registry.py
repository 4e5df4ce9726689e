import time
from typing import Mapping

from ratekeeper.config import AlgorithmType
from ratekeeper.core.storage.base import StorageBackend
from ratekeeper.core.strategies.base import Clock, RateLimitStrategy
from ratekeeper.core.strategies.fixed_window import FixedWindowStrategy
from ratekeeper.core.strategies.sliding_window import SlidingWindowStrategy
from ratekeeper.core.strategies.sliding_window_counter import SlidingWindowCounterStrategy
from ratekeeper.core.strategies.token_bucket import TokenBucketStrategy

STRATEGY_CLASSES: Mapping[AlgorithmType, type[RateLimitStrategy]] = {
    AlgorithmType.TOKEN_BUCKET: TokenBucketStrategy,
    AlgorithmType.FIXED_WINDOW: FixedWindowStrategy,
    AlgorithmType.SLIDING_WINDOW_LOG: SlidingWindowStrategy,
    AlgorithmType.SLIDING_WINDOW_COUNTER: SlidingWindowCounterStrategy,
}


def build_strategies(
    backend: StorageBackend,
    clock: Clock = time.time,
    key_prefix: str = "ratekeeper",
) -> dict[AlgorithmType, RateLimitStrategy]:
    """
    Instantiate every algorithm against one backend.

    Called once at startup; the result is handed to RateLimiterService.
    """
    return {
        algorithm: strategy_cls(backend, clock=clock, key_prefix=key_prefix)
        for algorithm, strategy_cls in STRATEGY_CLASSES.items()
    }
