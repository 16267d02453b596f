#!/usr/bin/env python3
"""
peakdiff - Main Entry Point

Runs the differential analysis from a source checkout. All processing is
delegated to the application service.
"""

import sys
from pathlib import Path

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from peakdiff.cli import main


if __name__ == "__main__":
    sys.exit(main())
