from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def sleep(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)


def exponential_interval(attempt: int, base: float = 0.5) -> float:
    return base * (2**attempt)


def retry(
    fn: Callable[[], T],
    *,
    attempts: int,
    interval_fn: Callable[[int], float] = exponential_interval,
    should_retry: Callable[[BaseException], bool] = lambda e: True,
    sleep_fn: Callable[[float], None] = sleep,
) -> T:
    """Call ``fn`` until it succeeds; the last failure propagates unchanged."""

    attempts = max(1, int(attempts))
    for attempt in range(attempts):
        try:
            return fn()
        except Exception as e:
            if attempt == attempts - 1 or not should_retry(e):
                raise
            sleep_fn(interval_fn(attempt))
    raise RuntimeError("retry exhausted without a result")


def chunked(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    size = max(1, int(size))
    for i in range(0, len(items), size):
        yield items[i : i + size]


def process_in_batches(items: Iterable[T], batch_size: int, fn: Callable[[T], R]) -> list[R]:
    """Run ``fn`` over ``items``; each batch runs in parallel and batches run one after another."""

    materialized = list(items)
    results: list[R] = []
    for batch in chunked(materialized, batch_size):
        if len(batch) == 1:
            results.append(fn(batch[0]))
            continue
        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            results.extend(pool.map(fn, batch))
    return results


def epoch_seconds() -> int:
    return int(time.time())


def epoch_millis() -> int:
    return int(time.time() * 1000)
