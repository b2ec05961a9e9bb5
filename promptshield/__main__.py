"""Entry point for ``python -m promptshield``."""

import sys

from promptshield.cli.main import main

if __name__ == "__main__":
    sys.exit(main())
