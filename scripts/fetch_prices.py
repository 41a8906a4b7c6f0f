#!/usr/bin/env python3
"""
Entry point script for the historical price attestation harvest.
"""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from attestation_harvester.core.harvesters.price_harvester import main

if __name__ == "__main__":
    sys.exit(main())
