"""
Core functionality for harvesting historical price attestations.
"""

from attestation_harvester.core.cache import ResumableCache
from attestation_harvester.core.config import HarvestConfig, load_config
from attestation_harvester.core.models import OracleIdentity

__all__ = [
    "HarvestConfig",
    "OracleIdentity",
    "ResumableCache",
    "load_config",
]
