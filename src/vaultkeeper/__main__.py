# vaultkeeper - Main Entry Point
#
# `python -m vaultkeeper ...` and the `vaultkeeper` console script both land here.

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
