#!/usr/bin/env python3
"""
pgharness - PostgreSQL container regression harness

Entry point script for running the harness from a checkout.

Usage:
    ./regress.py run                       # All tiers
    ./regress.py run --tier 1 --fast       # Core fast list only
    ./regress.py run -m regression         # Regression mode
    ./regress.py validate                  # Check the manifest
    ./regress.py --help                    # Show help
"""

import sys
from pathlib import Path

# Add the project root to path so pgharness package can be imported
project_root = Path(__file__).parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from pgharness.cli import main

if __name__ == "__main__":
    main()
