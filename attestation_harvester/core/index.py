"""
Attestation index client (Arweave GraphQL).

RedStone nodes publish every signed data package as an Arweave transaction
tagged with the service, the signer and the package timestamp (milliseconds,
aligned to the 10 s grid). One query is issued per oracle identity; the
index is eventually consistent, so neighbouring grid points are searched too
and the record closest in time wins.
"""

from typing import Any, Dict, List, Optional, Sequence

import requests
from loguru import logger

from attestation_harvester.core.errors import FetchError
from attestation_harvester.core.models import OracleIdentity, RawAttestationRecord
from attestation_harvester.core.utils import call_with_retries, get_session

Q_PACKAGES = """
query($tags: [TagFilter!]!, $first: Int!) {
  transactions(tags: $tags, first: $first) {
    edges {
      node {
        id
        tags { name value }
      }
    }
  }
}
"""


class AttestationFetcher:
    def __init__(
        self,
        index_url: str,
        data_service_id: str,
        bucket_seconds: int = 10,
        window_buckets: int = 1,
        timeout: float = 30.0,
        retries: int = 0,
        backoff: float = 1.0,
        session: Optional[requests.Session] = None,
        page_size: int = 20,
    ):
        self.index_url = index_url
        self.data_service_id = data_service_id
        self.bucket_seconds = bucket_seconds
        self.window_buckets = window_buckets
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.page_size = page_size
        self._session = session

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "AttestationFetcher":
        return cls(
            config.index_url,
            config.service_id,
            bucket_seconds=config.bucket_seconds,
            window_buckets=config.index_window_buckets,
            timeout=config.request_timeout,
            retries=config.max_retries,
            backoff=config.retry_backoff,
            session=session,
        )

    def window_ms(self, bucketed_ts: int) -> List[int]:
        """Index keys to query, the exact grid point first."""
        keys = [bucketed_ts * 1000]
        for k in range(1, self.window_buckets + 1):
            keys.append((bucketed_ts - k * self.bucket_seconds) * 1000)
            keys.append((bucketed_ts + k * self.bucket_seconds) * 1000)
        return keys

    def build_variables(self, bucketed_ts: int, oracle: OracleIdentity) -> Dict[str, Any]:
        return {
            "tags": [
                {"name": "app", "values": ["Redstone"]},
                {"name": "type", "values": ["data-package"]},
                {"name": "dataServiceId", "values": [self.data_service_id]},
                {"name": "signerAddress", "values": [oracle.address]},
                {"name": "timestamp", "values": [str(ms) for ms in self.window_ms(bucketed_ts)]},
            ],
            "first": self.page_size,
        }

    def _gql(self, variables: Dict[str, Any]) -> Dict[str, Any]:
        session = self._session or get_session()

        def post() -> Dict[str, Any]:
            r = session.post(
                self.index_url,
                json={"query": Q_PACKAGES, "variables": variables},
                timeout=self.timeout,
            )
            r.raise_for_status()
            data = r.json()
            if not isinstance(data, dict):
                raise FetchError(f"unexpected index response: {type(data).__name__}")
            if data.get("errors"):
                raise FetchError(f"GraphQL error: {data['errors']}")
            payload = data.get("data") or {}
            if not isinstance(payload, dict):
                raise FetchError(f"unexpected index payload: {type(payload).__name__}")
            return payload

        try:
            return call_with_retries(post, self.retries, self.backoff, retry_on=(requests.RequestException, ValueError, FetchError))
        except FetchError:
            raise
        except (requests.RequestException, ValueError) as exc:
            raise FetchError(f"index query failed: {exc}") from exc

    def fetch(self, bucketed_ts: int, oracle: OracleIdentity) -> Optional[RawAttestationRecord]:
        """Closest record for one identity, `None` when the index has nothing."""
        data = self._gql(self.build_variables(bucketed_ts, oracle))
        transactions = data.get("transactions") or {}
        edges = transactions.get("edges") if isinstance(transactions, dict) else None
        if not isinstance(edges, list):
            edges = []
        target_ms = bucketed_ts * 1000
        best: Optional[RawAttestationRecord] = None
        best_distance: Optional[int] = None
        for edge in edges:
            node = edge.get("node") if isinstance(edge, dict) else None
            if not isinstance(node, dict) or not node.get("id"):
                continue
            tx_id = node["id"]
            raw_tags = node.get("tags")
            tags = {
                t.get("name"): t.get("value")
                for t in (raw_tags if isinstance(raw_tags, list) else [])
                if isinstance(t, dict)
            }
            try:
                ts_ms = int(tags["timestamp"])
            except (KeyError, TypeError, ValueError):
                ts_ms = None
            distance = abs(ts_ms - target_ms) if ts_ms is not None else None
            if best is None or (distance is not None and (best_distance is None or distance < best_distance)):
                best = RawAttestationRecord(oracle=oracle, payload_locator=str(tx_id), timestamp_ms=ts_ms)
                best_distance = distance
        return best

    def fetch_all(
        self, bucketed_ts: int, oracles: Sequence[OracleIdentity]
    ) -> List[Optional[RawAttestationRecord]]:
        """One slot per identity, in order; failed or empty lookups give `None`."""
        records: List[Optional[RawAttestationRecord]] = []
        for oracle in oracles:
            try:
                record = self.fetch(bucketed_ts, oracle)
            except FetchError as exc:
                logger.warning(f"Index lookup failed for {oracle.name} @ {bucketed_ts}: {exc}")
                record = None
            else:
                if record is None:
                    logger.info(f"No attestation from {oracle.name} near {bucketed_ts}")
            records.append(record)
        return records
