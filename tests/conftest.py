"""Shared test fixtures for pytest.

Provides in-memory stand-ins for the chain node, the Arweave index and the
payload gateway so the harvester can be exercised without network access.
"""

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from attestation_harvester.core.blocks import bucket_timestamp
from attestation_harvester.core.config import HarvestConfig
from attestation_harvester.core.errors import DecodeError, ResolutionError
from attestation_harvester.core.models import (
    DataPoint,
    OracleIdentity,
    RawAttestationRecord,
    ResolvedBlock,
    SignedDataPackage,
)

DAY = 86400
START = 1701950400
ORACLES = tuple(OracleIdentity)


class FakeEth:
    def __init__(self, timestamps: Sequence[int]):
        self.timestamps = timestamps
        self.get_block_calls = 0
        self.fail = False

    @property
    def block_number(self) -> int:
        if self.fail:
            raise requests.ConnectionError("node unreachable")
        return len(self.timestamps) - 1

    def get_block(self, n: int) -> Dict[str, int]:
        if self.fail:
            raise requests.ConnectionError("node unreachable")
        self.get_block_calls += 1
        return {"number": n, "timestamp": self.timestamps[n]}


class FakeWeb3:
    def __init__(self, timestamps: Sequence[int]):
        self.eth = FakeEth(timestamps)


class FakeResponse:
    def __init__(self, payload: Any = None, status: int = 200, bad_json: bool = False):
        self.payload = payload
        self.status_code = status
        self.bad_json = bad_json

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> Any:
        if self.bad_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload


class FakeSession:
    """Routes `post` to the index handler and `get` to the payload handler."""

    def __init__(
        self,
        post_handler: Optional[Callable[[str, Dict[str, Any]], FakeResponse]] = None,
        get_handler: Optional[Callable[[str], FakeResponse]] = None,
    ):
        self.post_handler = post_handler
        self.get_handler = get_handler
        self.posts: List[Dict[str, Any]] = []
        self.gets: List[str] = []
        self.timeouts: List[float] = []

    def post(self, url: str, json: Dict[str, Any], timeout: float) -> FakeResponse:
        self.posts.append(json)
        self.timeouts.append(timeout)
        return self.post_handler(url, json)

    def get(self, url: str, timeout: float) -> FakeResponse:
        self.gets.append(url)
        self.timeouts.append(timeout)
        return self.get_handler(url)


def tag_values(variables: Dict[str, Any], name: str) -> List[str]:
    for tag in variables["tags"]:
        if tag["name"] == name:
            return tag["values"]
    return []


def arweave_index(missing: Sequence[str] = ()) -> Callable[[str, Dict[str, Any]], FakeResponse]:
    """Index that returns one package per signer at the exact grid point."""

    def handler(url: str, body: Dict[str, Any]) -> FakeResponse:
        variables = body["variables"]
        signer = tag_values(variables, "signerAddress")[0]
        ts_ms = tag_values(variables, "timestamp")[0]
        if signer in missing:
            return FakeResponse({"data": {"transactions": {"edges": []}}})
        node = {"id": f"{signer}_{ts_ms}", "tags": [{"name": "timestamp", "value": ts_ms}]}
        return FakeResponse({"data": {"transactions": {"edges": [{"node": node}]}}})

    return handler


def arweave_gateway(url: str) -> FakeResponse:
    signer, ts_ms = url.rsplit("/", 1)[1].split("_")
    price = 20 + (int(ts_ms) // 1000 - START) / DAY
    return FakeResponse({
        "timestamp": int(ts_ms),
        "signerAddress": signer,
        "dataPoints": [{"dataFeedId": "AVAX", "value": price}, {"dataFeedId": "BTC", "value": 42000.5}],
    })


class StubResolver:
    def __init__(self, fail: Sequence[int] = (), offset: int = 37, interrupt_on: Optional[int] = None):
        self.fail = set(fail)
        self.offset = offset
        self.interrupt_on = interrupt_on
        self.calls: List[int] = []

    def resolve(self, timestamp: int) -> ResolvedBlock:
        self.calls.append(timestamp)
        if timestamp == self.interrupt_on:
            raise KeyboardInterrupt
        if timestamp in self.fail:
            raise ResolutionError(timestamp, "beyond chain head")
        block_ts = timestamp + self.offset
        return ResolvedBlock(timestamp, timestamp // 2, block_ts, bucket_timestamp(block_ts, 10))


class StubFetcher:
    def __init__(self, missing: Sequence[OracleIdentity] = ()):
        self.missing = set(missing)
        self.calls: List[int] = []

    def fetch_all(self, bucketed_ts: int, oracles: Sequence[OracleIdentity]) -> List[Optional[RawAttestationRecord]]:
        self.calls.append(bucketed_ts)
        return [
            None if o in self.missing else RawAttestationRecord(o, f"{o.name}:{bucketed_ts}", bucketed_ts * 1000)
            for o in oracles
        ]


class StubDecoder:
    def __init__(self, broken: Sequence[OracleIdentity] = ()):
        self.broken = set(broken)

    def decode(self, record: RawAttestationRecord) -> SignedDataPackage:
        if record.oracle in self.broken:
            raise DecodeError("malformed JSON")
        slot = list(OracleIdentity).index(record.oracle)
        return SignedDataPackage(
            data_points=(DataPoint("AVAX", 20.0 + slot),),
            signer=record.oracle.address,
            timestamp_ms=record.timestamp_ms,
        )


@pytest.fixture
def cache_path(tmp_path: Path) -> Path:
    return tmp_path / "historical_prices.json"


@pytest.fixture
def make_config(cache_path: Path) -> Callable[..., HarvestConfig]:
    def _make(**overrides: Any) -> HarvestConfig:
        params: Dict[str, Any] = {
            "start_ts": START,
            "end_ts": START + 2 * DAY,
            "step_seconds": DAY,
            "batch_size": 5,
            "cache_path": cache_path,
            "oracles": ORACLES,
        }
        params.update(overrides)
        return HarvestConfig(**params)

    return _make
