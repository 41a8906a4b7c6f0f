import json
import numbers
import os
import tempfile
import threading
import time
from typing import Any, Callable, Dict, Tuple, Type, TypeVar, Union

import pandas as pd
import requests
from requests.adapters import HTTPAdapter

T = TypeVar("T")


def to_unix(ts: Union[int, str, Any]) -> int:
    """Convert unix seconds, digit strings or ISO8601 strings to unix seconds."""
    if isinstance(ts, bool):
        raise ValueError(f"Not a timestamp: {ts!r}")
    if isinstance(ts, numbers.Integral):
        return int(ts)
    if isinstance(ts, str):
        stripped = ts.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
        return int(pd.to_datetime(stripped, utc=True).value // 10**9)
    return int(pd.to_datetime(ts, utc=True).value // 10**9)


def format_ts(ts: int) -> str:
    return str(pd.to_datetime(ts, unit="s", utc=True))


def atomic_write_json(path: Union[str, os.PathLike], payload: Dict[str, Any]) -> None:
    """Write `payload` next to `path` and rename it into place.

    Key order is preserved as given so identical content always produces
    identical bytes.
    """
    d = os.path.dirname(os.path.abspath(path)) or "."
    os.makedirs(d, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".cache_", dir=d, text=True)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(payload, f, separators=(",", ":"))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.remove(tmp)
        except OSError:
            pass
        raise


def call_with_retries(
    fn: Callable[[], T],
    retries: int = 0,
    backoff: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `fn`, retrying up to `retries` extra times with exponential backoff."""
    for attempt in range(retries + 1):
        try:
            return fn()
        except retry_on:
            if attempt >= retries:
                raise
            sleep(backoff * (2 ** attempt))
    raise RuntimeError("unreachable")


_SESSION_LOCAL = threading.local()


def get_session() -> requests.Session:
    """One pooled `requests.Session` per worker thread."""
    s = getattr(_SESSION_LOCAL, "session", None)
    if s is None:
        s = requests.Session()
        adapter = HTTPAdapter(pool_connections=32, pool_maxsize=32)
        s.mount("http://", adapter)
        s.mount("https://", adapter)
        _SESSION_LOCAL.session = s
    return s
