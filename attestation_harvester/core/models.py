"""
Domain types shared by the planner, resolver, fetcher, decoder and cache.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from attestation_harvester.core.errors import ConfigError

# One slot per configured oracle, each slot a list of {"symbol", "value"} points.
CacheEntry = List[List[Dict[str, Any]]]


class OracleIdentity(Enum):
    """Trusted RedStone signers whose packages are harvested."""

    REDSTONE_NODE_1 = "0x83cbA8c619fb629b81A65C2e67fE15cf3E3C9747"
    REDSTONE_NODE_2 = "0x2c59617248994D12816EE1Fa77CE0a64eEB456BF"
    REDSTONE_NODE_3 = "0x12470f7aBA85c8b81D63137DD5925D6EE114952b"

    @property
    def address(self) -> str:
        return self.value

    def matches(self, address: Optional[str]) -> bool:
        return bool(address) and str(address).lower() == self.value.lower()

    @classmethod
    def parse(cls, value: Any) -> "OracleIdentity":
        """Accept a member, a member name or a signer address (case-insensitive)."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text.upper() == member.name or member.matches(text):
                return member
        raise ConfigError(f"Unknown oracle identity {value!r}; expected one of {[m.name for m in cls]}")


class Chain(Enum):
    """Supported chains: (public RPC endpoint, RedStone data service id)."""

    AVALANCHE = ("https://api.avax.network/ext/bc/C/rpc", "redstone-avalanche-prod")
    ARBITRUM = ("https://arb1.arbitrum.io/rpc", "redstone-arbitrum-prod")

    @property
    def default_rpc_url(self) -> str:
        return self.value[0]

    @property
    def data_service_id(self) -> str:
        return self.value[1]

    @classmethod
    def parse(cls, value: Any) -> "Chain":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ConfigError(f"Unknown chain {value!r}; expected one of {[m.name.lower() for m in cls]}") from None


class MissingOraclePolicy(Enum):
    # Entry with empty slots is final; the missing oracles are never retried.
    ACCEPT_PARTIAL = "accept_partial"
    # Entry is written only when every oracle produced data; gaps are retried next run.
    REQUIRE_COMPLETE = "require_complete"

    @classmethod
    def parse(cls, value: Any) -> "MissingOraclePolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigError(f"Unknown missing_oracle_policy {value!r}") from None


class HarvestState(Enum):
    IDLE = "idle"
    LOADING_CACHE = "loading_cache"
    PLANNING = "planning"
    FETCHING_BATCH = "fetching_batch"
    FLUSHING = "flushing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ResolvedBlock:
    requested_timestamp: int
    block_number: int
    block_timestamp: int
    bucketed_timestamp: int


@dataclass(frozen=True)
class RawAttestationRecord:
    oracle: OracleIdentity
    payload_locator: str
    timestamp_ms: Optional[int] = None


@dataclass(frozen=True)
class DataPoint:
    symbol: str
    value: float

    def to_json(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "value": self.value}


@dataclass(frozen=True)
class SignedDataPackage:
    data_points: Tuple[DataPoint, ...]
    signer: str
    timestamp_ms: int


@dataclass
class HarvestSummary:
    """Outcome of one harvester run over the configured window."""

    requested: int = 0
    covered: int = 0
    written: int = 0
    batches: int = 0
    flushes: int = 0
    filled_slots: int = 0
    empty_slots: int = 0
    elapsed: float = 0.0
    last_flushed: Optional[int] = None
    skipped_incomplete: List[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.covered == self.requested
