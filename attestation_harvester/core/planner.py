"""
Time window planning: step-aligned timestamps consumed in fixed-size batches.

Pure and deterministic. Resuming is done by asking for a new window that
starts one step past the greatest cached timestamp (`resume_point`).
"""

from typing import Collection, Iterable, Iterator, List

from attestation_harvester.core.errors import ConfigError


def _check_window(start: int, end: int, step: int, batch_size: int) -> None:
    if step <= 0:
        raise ConfigError(f"step must be > 0 (got {step})")
    if batch_size <= 0:
        raise ConfigError(f"batch_size must be > 0 (got {batch_size})")
    if end < start:
        raise ConfigError(f"end ({end}) must be >= start ({start})")


def _batched(timestamps: Iterable[int], batch_size: int) -> Iterator[List[int]]:
    batch: List[int] = []
    for ts in timestamps:
        batch.append(ts)
        if len(batch) == batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


def generate(start: int, end: int, step: int, batch_size: int) -> Iterator[List[int]]:
    """Yield ordered batches of up to `batch_size` timestamps `start, start+step, ... <= end`."""
    _check_window(start, end, step, batch_size)
    return _batched(range(start, end + 1, step), batch_size)


def resume_point(cached: Collection[int], start: int, step: int) -> int:
    if not cached:
        return start
    return max(max(cached) + step, start)


def missing_timestamps(
    start: int, end: int, step: int, cached: Collection[int], batch_size: int
) -> Iterator[List[int]]:
    """Like `generate`, but skips timestamps already present in `cached`."""
    _check_window(start, end, step, batch_size)
    return _batched((ts for ts in range(start, end + 1, step) if ts not in cached), batch_size)
