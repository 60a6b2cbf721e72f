"""Entry point for ``python -m idemco``."""

import sys

from idemco.cli import main

if __name__ == "__main__":
    sys.exit(main())
