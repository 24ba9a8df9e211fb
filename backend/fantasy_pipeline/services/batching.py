"""Fixed-width concurrent fan-out used inside sync jobs."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def gather_in_batches(
    items: Sequence[T],
    batch_size: int,
    func: Callable[[T], Awaitable[R]],
    label: str = "item",
) -> list[R]:
    """Run ``func`` over ``items`` in concurrent batches of ``batch_size``.

    Each batch is awaited in full before the next one starts, which caps the
    number of outbound calls in flight. A failing item is logged and left
    out of the result; its siblings are unaffected. Results keep input order.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    failed = 0

    async def run_one(item: T) -> tuple[bool, R | None]:
        nonlocal failed
        try:
            return True, await func(item)
        except Exception as e:
            logger.warning(f"Failed to process {label} {item!r}: {type(e).__name__}: {e}")
            failed += 1
            return False, None

    results: list[R] = []
    for start in range(0, len(items), batch_size):
        batch = items[start : start + batch_size]
        outcomes = await asyncio.gather(*[run_one(item) for item in batch])
        results.extend(value for ok, value in outcomes if ok)  # type: ignore[misc]

    if failed:
        logger.warning(f"{failed}/{len(items)} {label} entries failed")

    return results
