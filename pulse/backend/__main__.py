"""Run the CLI from a checkout: python pulse/backend <command>"""

import sys
from pathlib import Path

# Backend modules import each other by bare name
sys.path.insert(0, str(Path(__file__).parent))

from cli import run

if __name__ == "__main__":
    sys.exit(run())
