"""
Error taxonomy for the attestation harvester.

Per-item failures (`ResolutionError`, `FetchError`, `DecodeError`) are caught
at timestamp/oracle granularity and leave an empty slot. `CacheCorruptionError`
is fatal and aborts the run before any network activity.
"""


class HarvesterError(Exception):
    """Base class for every error raised by the harvester."""


class ConfigError(HarvesterError, ValueError):
    """Invalid runtime configuration (bad window, unknown oracle, ...)."""


class ResolutionError(HarvesterError):
    """No block could be resolved for a timestamp."""

    def __init__(self, timestamp: int, reason: str):
        super().__init__(f"cannot resolve block for {timestamp}: {reason}")
        self.timestamp = timestamp
        self.reason = reason


class FetchError(HarvesterError):
    """The attestation index was unavailable, errored or timed out."""


class DecodeError(HarvesterError):
    """A payload could not be downloaded, parsed or validated."""


class CacheCorruptionError(HarvesterError):
    """The persisted cache file exists but cannot be parsed."""


class CacheConflictError(HarvesterError):
    """Attempt to overwrite an entry that is already cached."""


class CacheLayoutError(CacheCorruptionError):
    """Cached entries have a different slot count than the configured oracles."""
