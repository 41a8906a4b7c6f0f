"""
Harvest drivers.
"""

from attestation_harvester.core.harvesters.price_harvester import Harvester, main as price_main, run

__all__ = [
    "Harvester",
    "price_main",
    "run",
]
