"""
Flatten the JSON cache into a tidy DataFrame for downstream analysis.

Caches written by the older JavaScript harvester stored RedStone
`numericDataPointArgs` objects (`dataFeedId`/`value`) instead of
`symbol`/`value`; both shapes are accepted.
"""

import pickle
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from attestation_harvester.core.cache import ResumableCache
from attestation_harvester.core.models import CacheEntry, OracleIdentity

COLUMNS = ["timestamp", "datetime", "oracle", "slot", "symbol", "value"]


def _point_fields(point: Any) -> Tuple[Optional[str], Optional[float]]:
    if not isinstance(point, Mapping):
        return None, None
    symbol = point.get("symbol", point.get("dataFeedId"))
    value = point.get("value")
    try:
        value = float(value) if value is not None else None
    except (TypeError, ValueError):
        value = None
    return symbol, value


def cache_to_frame(entries: Mapping[int, CacheEntry], oracles: Sequence[OracleIdentity]) -> pd.DataFrame:
    rows: List[Dict[str, Any]] = []
    for ts in sorted(entries):
        for slot, points in enumerate(entries[ts]):
            oracle = oracles[slot].name if slot < len(oracles) else None
            for point in points:
                symbol, value = _point_fields(point)
                rows.append({"timestamp": int(ts), "oracle": oracle, "slot": slot, "symbol": symbol, "value": value})
    df = pd.DataFrame(rows, columns=COLUMNS)
    df["datetime"] = pd.to_datetime(df["timestamp"], unit="s", utc=True)
    return df


def export_cache(
    cache_path: Union[str, Path], out_path: Union[str, Path], oracles: Sequence[OracleIdentity]
) -> Tuple[Path, int]:
    """Write the flattened cache as pickle (`.pkl`/`.pickle`) or CSV; returns (path, rows)."""
    entries = ResumableCache(cache_path).load(expected_slots=len(oracles))
    df = cache_to_frame(entries, oracles)
    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    if out.suffix.lower() in {".pkl", ".pickle"}:
        df.to_pickle(out, compression=None, protocol=pickle.HIGHEST_PROTOCOL)
    elif out.suffix.lower() == ".csv":
        df.to_csv(out, index=False)
    else:
        raise ValueError(f"Unsupported export format for {out}")
    return out, len(df)
