# src/marketplace_bff/backoff.py

import time
from typing import Any, Callable, List, Optional, Tuple, Type


def calculate_backoff_delay(
    base_delay_ms: float,
    attempt: int,
    max_delay_ms: Optional[float] = None,
    factor: float = 2,
) -> float:
    """
    Exponential backoff delay: base * factor**attempt, capped at max_delay_ms.

    attempt is zero-based and clamped to >= 0. Deterministic (no jitter).
    """
    attempt = max(int(attempt), 0)
    raw = base_delay_ms * (factor ** attempt)
    if max_delay_ms is not None:
        return min(raw, max_delay_ms)
    return raw


def generate_backoff_sequence(
    base_delay_ms: float,
    attempts: int,
    max_delay_ms: Optional[float] = None,
    factor: float = 2,
) -> List[float]:
    """Delays for attempts 0..attempts-1 (useful in tests and metrics)."""
    return [
        calculate_backoff_delay(base_delay_ms, i, max_delay_ms=max_delay_ms, factor=factor)
        for i in range(max(int(attempts), 0))
    ]


def retry_call(
    fn: Callable[[], Any],
    *,
    retries: int = 2,
    base_delay_ms: float = 200,
    max_delay_ms: Optional[float] = 5_000,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call fn() and retry on the listed exceptions with capped exponential backoff.

    retries: number of retry attempts (so total calls = 1 + retries)
    """
    attempt = 0
    while True:
        try:
            return fn()
        except retry_on as ex:
            if attempt >= int(retries):
                raise
            delay_ms = calculate_backoff_delay(base_delay_ms, attempt, max_delay_ms=max_delay_ms)
            attempt += 1
            if on_retry is not None:
                on_retry(attempt, delay_ms, ex)
            sleep(max(0.0, delay_ms / 1000.0))
