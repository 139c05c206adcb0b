#!/usr/bin/env python
"""Run the ratingsync command line (populate, audit, repair)."""
import sys

from ratingsync.cli import main

if __name__ == "__main__":
    sys.exit(main())
