"""Entry point for ``python -m local_ipc``."""

import sys

from local_ipc.cli import main

if __name__ == "__main__":
    sys.exit(main())
