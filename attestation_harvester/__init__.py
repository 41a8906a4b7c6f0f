"""
RedStone Attestation Harvester

Rebuilds historical, day-granular series of signed oracle price packages.
"""

__version__ = "1.0.0"

from attestation_harvester.core import (
    HarvestConfig,
    OracleIdentity,
    ResumableCache,
    load_config,
)

__all__ = [
    "__version__",
    "HarvestConfig",
    "OracleIdentity",
    "ResumableCache",
    "load_config",
]
