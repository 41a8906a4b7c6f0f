"""
Signed data package decoding.

Payload envelope (as stored on Arweave by RedStone nodes)::

    {
      "timestamp": 1701950430000,
      "signature": "<base64 r||s||v>",
      "signerAddress": "0x...",          # optional when a signature is present
      "dataPoints": [{"dataFeedId": "AVAX", "value": 21.37}, ...]
    }

Signer recovery hashes the RedStone byte layout of the package: data points
sorted by feed id, each as bytes32 feed id + uint256 value scaled by 1e8,
then a 6-byte timestamp, 4-byte value size and 3-byte point count.
"""

import base64
import binascii
import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import requests
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from loguru import logger
from web3 import Web3

from attestation_harvester.core.errors import DecodeError
from attestation_harvester.core.models import DataPoint, RawAttestationRecord, SignedDataPackage
from attestation_harvester.core.utils import call_with_retries, get_session

DEFAULT_NUM_DECIMALS = 8
DEFAULT_VALUE_BYTE_SIZE = 32
TIMESTAMP_BYTE_SIZE = 6
SIGNATURE_BYTE_SIZE = 65
MAX_TIMESTAMP_MS = 2 ** (8 * TIMESTAMP_BYTE_SIZE) - 1


def _feed_id_bytes(feed_id: str) -> bytes:
    raw = feed_id.encode("utf-8")
    if len(raw) > 32:
        raise DecodeError(f"dataFeedId too long: {feed_id!r}")
    return raw.ljust(32, b"\x00")


def _value_bytes(value: float, decimals: int = DEFAULT_NUM_DECIMALS) -> bytes:
    try:
        scaled = int((Decimal(repr(value)) * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_HALF_UP))
    except (ArithmeticError, ValueError) as exc:
        raise DecodeError(f"value cannot be serialized: {value!r}") from exc
    if not 0 <= scaled < 2 ** (8 * DEFAULT_VALUE_BYTE_SIZE):
        raise DecodeError(f"value out of uint256 range: {value!r}")
    return scaled.to_bytes(DEFAULT_VALUE_BYTE_SIZE, "big")


def _timestamp_bytes(timestamp_ms: int) -> bytes:
    if not 0 <= int(timestamp_ms) <= MAX_TIMESTAMP_MS:
        raise DecodeError(f"timestamp out of range: {timestamp_ms}")
    return int(timestamp_ms).to_bytes(TIMESTAMP_BYTE_SIZE, "big")


def serialize_package(points: Sequence[DataPoint], timestamp_ms: int) -> bytes:
    """RedStone byte layout of a numeric data package, without the signature."""
    body = b"".join(
        _feed_id_bytes(p.symbol) + _value_bytes(p.value)
        for p in sorted(points, key=lambda p: _feed_id_bytes(p.symbol))
    )
    return (
        body
        + _timestamp_bytes(timestamp_ms)
        + DEFAULT_VALUE_BYTE_SIZE.to_bytes(4, "big")
        + len(points).to_bytes(3, "big")
    )


def recover_signer(points: Sequence[DataPoint], timestamp_ms: int, signature: str) -> str:
    try:
        sig = bytearray(base64.b64decode(signature, validate=True))
    except (binascii.Error, ValueError, TypeError) as exc:
        raise DecodeError(f"signature is not base64: {exc}") from exc
    if len(sig) != SIGNATURE_BYTE_SIZE:
        raise DecodeError(f"signature must be {SIGNATURE_BYTE_SIZE} bytes, got {len(sig)}")
    if sig[64] >= 27:
        sig[64] -= 27
    try:
        digest = Web3.keccak(serialize_package(points, timestamp_ms))
    except OverflowError as exc:
        raise DecodeError(f"package cannot be serialized: {exc}") from exc
    try:
        public_key = keys.Signature(signature_bytes=bytes(sig)).recover_public_key_from_msg_hash(bytes(digest))
    except (BadSignature, ValidationError) as exc:
        raise DecodeError(f"unrecoverable signature: {exc}") from exc
    return public_key.to_checksum_address()


def _parse_points(raw_points: Any) -> List[DataPoint]:
    if not isinstance(raw_points, list) or not raw_points:
        raise DecodeError("dataPoints must be a non-empty list")
    points: List[DataPoint] = []
    for raw in raw_points:
        if not isinstance(raw, Mapping):
            raise DecodeError(f"data point is not an object: {raw!r}")
        symbol = raw.get("dataFeedId")
        value = raw.get("value")
        if not isinstance(symbol, str) or not symbol:
            raise DecodeError(f"data point without dataFeedId: {raw!r}")
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise DecodeError(f"non-numeric value for {symbol}: {value!r}")
        try:
            number = float(Decimal(str(value)))
        except InvalidOperation as exc:
            raise DecodeError(f"non-numeric value for {symbol}: {value!r}") from exc
        if not math.isfinite(number):
            raise DecodeError(f"non-finite value for {symbol}: {value!r}")
        points.append(DataPoint(symbol=symbol, value=number))
    return points


class PackageDecoder:
    def __init__(
        self,
        payload_gateway: str = "https://arweave.net",
        timeout: float = 30.0,
        verify_signatures: bool = True,
        symbols: Iterable[str] = (),
        retries: int = 0,
        backoff: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        self.payload_gateway = payload_gateway.rstrip("/")
        self.timeout = timeout
        self.verify_signatures = verify_signatures
        self.symbols = frozenset(symbols)
        self.retries = retries
        self.backoff = backoff
        self._session = session

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "PackageDecoder":
        return cls(
            config.payload_gateway,
            timeout=config.request_timeout,
            verify_signatures=config.verify_signatures,
            symbols=config.symbols,
            retries=config.max_retries,
            backoff=config.retry_backoff,
            session=session,
        )

    def payload_url(self, locator: str) -> str:
        return f"{self.payload_gateway}/{locator}"

    def download(self, record: RawAttestationRecord) -> Any:
        session = self._session or get_session()
        url = self.payload_url(record.payload_locator)

        def get() -> Any:
            r = session.get(url, timeout=self.timeout)
            r.raise_for_status()
            return r.json()

        try:
            return call_with_retries(get, self.retries, self.backoff, retry_on=(requests.RequestException,))
        except ValueError as exc:
            raise DecodeError(f"malformed JSON at {url}: {exc}") from exc
        except requests.RequestException as exc:
            raise DecodeError(f"download failed for {url}: {exc}") from exc

    def decode(self, record: RawAttestationRecord) -> SignedDataPackage:
        package = self.parse_package(self.download(record))
        if not record.oracle.matches(package.signer):
            raise DecodeError(f"package signed by {package.signer}, expected {record.oracle.address}")
        return package

    def parse_package(self, payload: Any) -> SignedDataPackage:
        if not isinstance(payload, Mapping):
            raise DecodeError("payload is not a JSON object")
        timestamp = payload.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise DecodeError(f"missing or invalid timestamp: {timestamp!r}")
        if not 0 <= timestamp <= MAX_TIMESTAMP_MS:
            raise DecodeError(f"timestamp out of range: {timestamp}")
        points = _parse_points(payload.get("dataPoints"))

        signer = payload.get("signerAddress")
        signature = payload.get("signature")
        if self.verify_signatures and signature:
            recovered = recover_signer(points, timestamp, signature)
            if signer and str(signer).lower() != recovered.lower():
                raise DecodeError(f"declared signer {signer} does not match recovered {recovered}")
            signer = recovered
        if not signer:
            raise DecodeError("package has no signer")

        if self.symbols:
            kept = [p for p in points if p.symbol in self.symbols]
            if len(kept) < len(points):
                logger.debug(f"Dropped {len(points) - len(kept)} unrequested feeds from {signer}")
            points = kept
        return SignedDataPackage(data_points=tuple(points), signer=str(signer), timestamp_ms=timestamp)
