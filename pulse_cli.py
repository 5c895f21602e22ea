"""Console script for the installed `pulse` command.

The backend is a directory of flat modules, so it goes on sys.path before
the CLI is imported. Settings read `.env` from the current directory.
"""

import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent / "pulse" / "backend"


def main() -> None:
    if str(BACKEND_DIR) not in sys.path:
        sys.path.insert(0, str(BACKEND_DIR))
    import cli

    sys.exit(cli.run())


if __name__ == "__main__":
    main()
