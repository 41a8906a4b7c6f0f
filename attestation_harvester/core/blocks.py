"""
Block resolution: wall-clock timestamp -> nearest block -> bucketed block time.

The attestation index keys packages on a coarse timestamp grid, so the block
timestamp is floored to `bucket_seconds` before it is used as a query key.
"""

from typing import Any, Dict, Optional

from eth_defi.provider.multi_provider import create_multi_provider_web3
from loguru import logger

from attestation_harvester.core.errors import ResolutionError
from attestation_harvester.core.models import ResolvedBlock
from attestation_harvester.core.utils import call_with_retries


def bucket_timestamp(ts: int, granularity: int) -> int:
    """Floor `ts` to the index grid, e.g. 1701950437 -> 1701950430 at 10 s."""
    if granularity <= 0:
        raise ValueError("granularity must be > 0")
    return (int(ts) // granularity) * granularity


class BlockResolver:
    def __init__(self, w3: Any, bucket_seconds: int = 10, retries: int = 0, backoff: float = 1.0):
        self.w3 = w3
        self.bucket_seconds = bucket_seconds
        self.retries = retries
        self.backoff = backoff
        self._ts_cache: Dict[int, int] = {}
        self._genesis_ts: Optional[int] = None

    @classmethod
    def from_config(cls, config) -> "BlockResolver":
        w3 = create_multi_provider_web3(
            " ".join(config.rpc_urls),
            request_kwargs={"timeout": config.request_timeout},
        )
        return cls(w3, config.bucket_seconds, config.max_retries, config.retry_backoff)

    def _rpc(self, timestamp: int, what: str, fn):
        try:
            return call_with_retries(fn, self.retries, self.backoff)
        except Exception as exc:
            raise ResolutionError(timestamp, f"{what} failed: {exc}") from exc

    def block_ts(self, bn: int, timestamp: int) -> int:
        if bn not in self._ts_cache:
            block = self._rpc(timestamp, f"get_block({bn})", lambda: self.w3.eth.get_block(bn))
            if block is None:
                raise ResolutionError(timestamp, f"block {bn} not found")
            try:
                self._ts_cache[bn] = int(block["timestamp"])
            except (KeyError, TypeError, ValueError) as exc:
                raise ResolutionError(timestamp, f"block {bn} has no usable timestamp: {exc!r}") from exc
        return self._ts_cache[bn]

    def resolve(self, timestamp: int) -> ResolvedBlock:
        """Binary search for the block whose timestamp is nearest to `timestamp`.

        Ties go to the later block. Raises `ResolutionError` before genesis,
        past the chain head or when the node cannot be reached.
        """
        head = int(self._rpc(timestamp, "block_number", lambda: self.w3.eth.block_number))
        if self._genesis_ts is None:
            self._genesis_ts = self.block_ts(0, timestamp)
        if timestamp < self._genesis_ts:
            raise ResolutionError(timestamp, f"before genesis ({self._genesis_ts})")
        head_ts = self.block_ts(head, timestamp)
        if timestamp > head_ts:
            raise ResolutionError(timestamp, f"beyond chain head {head} ({head_ts})")

        # first block with block.timestamp >= timestamp
        lo, hi = 0, head
        while lo < hi:
            mid = (lo + hi) // 2
            if self.block_ts(mid, timestamp) >= timestamp:
                hi = mid
            else:
                lo = mid + 1

        block_number = lo
        if lo > 0:
            after = self.block_ts(lo, timestamp) - timestamp
            before = timestamp - self.block_ts(lo - 1, timestamp)
            if before < after:
                block_number = lo - 1

        block_time = self.block_ts(block_number, timestamp)
        resolved = ResolvedBlock(
            requested_timestamp=timestamp,
            block_number=block_number,
            block_timestamp=block_time,
            bucketed_timestamp=bucket_timestamp(block_time, self.bucket_seconds),
        )
        logger.debug(f"Resolved {timestamp} -> block {block_number} @ {block_time} (bucket {resolved.bucketed_timestamp})")
        return resolved
