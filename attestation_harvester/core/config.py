"""
Runtime configuration.

Values are read from a YAML file (path from `HARVEST_CONFIG_PATH`, default
`parameters_yml/harvest_config.yml`) and merged over `DEFAULT_CONFIG`.
Everything is normalised into an immutable `HarvestConfig`.

Configuration knobs
-------------------
- `chain`: `avalanche` or `arbitrum`; picks the default RPC and data service.
- `json_rpc_urls`: RPC endpoints tried in order; `${VAR}` is expanded from the
  environment so API keys stay out of the file.
- `index_url` / `payload_gateway`: Arweave GraphQL index and content gateway.
- `oracles`: ordered signer list (enum names or addresses). Order defines the
  slot layout of every cache entry.
- `start_ts` / `end_ts`: window (UNIX seconds or ISO8601), both inclusive.
- `step_seconds` / `batch_size`: sampling cadence and timestamps per flush.
- `bucket_seconds`: index timestamp granularity (RedStone keys on 10 s).
- `index_window_buckets`: neighbouring buckets searched on each side.
- `request_timeout`, `max_retries`, `retry_backoff`: network behaviour.
- `cache_path`: JSON cache file.
- `missing_oracle_policy`: `accept_partial` or `require_complete`.
- `verify_signatures`: recover the signer from the package signature.
- `symbols`: keep only these feeds (empty keeps everything).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import yaml
from loguru import logger

from attestation_harvester.core.errors import ConfigError
from attestation_harvester.core.models import Chain, MissingOraclePolicy, OracleIdentity
from attestation_harvester.core.utils import to_unix

CONFIG_PATH = os.environ.get("HARVEST_CONFIG_PATH", "parameters_yml/harvest_config.yml")

DEFAULT_CONFIG: Dict[str, Any] = {
    "chain": "avalanche",
    "json_rpc_urls": [],
    "index_url": "https://arweave.net/graphql",
    "payload_gateway": "https://arweave.net",
    "data_service_id": None,
    "oracles": [member.name for member in OracleIdentity],
    "start_ts": 1701950400,
    "end_ts": 1704888000,
    "step_seconds": 86400,
    "batch_size": 5,
    "bucket_seconds": 10,
    "index_window_buckets": 1,
    "request_timeout": 30.0,
    "max_retries": 0,
    "retry_backoff": 1.0,
    "cache_path": "historical_prices.json",
    "missing_oracle_policy": "accept_partial",
    "verify_signatures": True,
    "symbols": [],
}


@dataclass(frozen=True)
class HarvestConfig:
    start_ts: int
    end_ts: int
    step_seconds: int = 86400
    batch_size: int = 5
    bucket_seconds: int = 10
    oracles: Tuple[OracleIdentity, ...] = tuple(OracleIdentity)
    cache_path: Path = Path("historical_prices.json")
    chain: Chain = Chain.AVALANCHE
    json_rpc_urls: Tuple[str, ...] = ()
    index_url: str = "https://arweave.net/graphql"
    payload_gateway: str = "https://arweave.net"
    data_service_id: Optional[str] = None
    index_window_buckets: int = 1
    request_timeout: float = 30.0
    max_retries: int = 0
    retry_backoff: float = 1.0
    missing_oracle_policy: MissingOraclePolicy = MissingOraclePolicy.ACCEPT_PARTIAL
    verify_signatures: bool = True
    symbols: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.step_seconds <= 0:
            raise ConfigError("step_seconds must be > 0")
        if self.batch_size <= 0:
            raise ConfigError("batch_size must be > 0")
        if self.end_ts < self.start_ts:
            raise ConfigError("end_ts must be >= start_ts")
        if self.bucket_seconds <= 0:
            raise ConfigError("bucket_seconds must be > 0")
        if not self.oracles:
            raise ConfigError("At least one oracle identity is required")
        if len(set(self.oracles)) != len(self.oracles):
            raise ConfigError("Oracle identities must be unique")
        if self.index_window_buckets < 0:
            raise ConfigError("index_window_buckets must be >= 0")
        if self.request_timeout <= 0:
            raise ConfigError("request_timeout must be > 0")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")

    @property
    def rpc_urls(self) -> Tuple[str, ...]:
        return self.json_rpc_urls or (self.chain.default_rpc_url,)

    @property
    def service_id(self) -> str:
        return self.data_service_id or self.chain.data_service_id

    def requested_timestamps(self) -> range:
        return range(self.start_ts, self.end_ts + 1, self.step_seconds)


def _as_list(value: Any) -> Sequence[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return value
    return [value]


def build_config(raw: Mapping[str, Any]) -> HarvestConfig:
    """Normalise a raw mapping (already merged over defaults) into a `HarvestConfig`."""
    cfg = DEFAULT_CONFIG.copy()
    cfg.update({k: v for k, v in raw.items() if k in DEFAULT_CONFIG})
    unknown = sorted(set(raw) - set(DEFAULT_CONFIG))
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")

    urls = [os.path.expandvars(str(u).strip()) for u in _as_list(cfg["json_rpc_urls"]) if str(u).strip()]
    try:
        start_ts = to_unix(cfg["start_ts"])
        end_ts = to_unix(cfg["end_ts"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid start_ts/end_ts: {exc}") from exc

    try:
        return HarvestConfig(
            start_ts=start_ts,
            end_ts=end_ts,
            step_seconds=int(cfg["step_seconds"]),
            batch_size=int(cfg["batch_size"]),
            bucket_seconds=int(cfg["bucket_seconds"]),
            oracles=tuple(OracleIdentity.parse(o) for o in _as_list(cfg["oracles"])),
            cache_path=Path(str(cfg["cache_path"])).expanduser(),
            chain=Chain.parse(cfg["chain"]),
            json_rpc_urls=tuple(urls),
            index_url=str(cfg["index_url"]).strip(),
            payload_gateway=str(cfg["payload_gateway"]).strip().rstrip("/"),
            data_service_id=str(cfg["data_service_id"]).strip() if cfg["data_service_id"] else None,
            index_window_buckets=int(cfg["index_window_buckets"]),
            request_timeout=float(cfg["request_timeout"]),
            max_retries=int(cfg["max_retries"]),
            retry_backoff=float(cfg["retry_backoff"]),
            missing_oracle_policy=MissingOraclePolicy.parse(cfg["missing_oracle_policy"]),
            verify_signatures=bool(cfg["verify_signatures"]),
            symbols=tuple(str(s).strip() for s in _as_list(cfg["symbols"]) if str(s).strip()),
        )
    except (TypeError, ValueError) as exc:
        if isinstance(exc, ConfigError):
            raise
        raise ConfigError(f"Invalid configuration value: {exc}") from exc


def load_config(path: Optional[str] = None, overrides: Optional[Mapping[str, Any]] = None) -> HarvestConfig:
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        logger.warning(f"Configuration file {path!r} not found. Using defaults.")
        loaded: Dict[str, Any] = {}
    else:
        with open(path, "r") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Configuration file {path!r} must contain a YAML mapping")
    if overrides:
        loaded.update({k: v for k, v in overrides.items() if v is not None})
    return build_config(loaded)
