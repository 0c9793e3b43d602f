"""
Entry point for material-kg-build.

Run with:
    python main.py --help
    python main.py build signals --user-id ... --set-id ... --saga-id ...
"""
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from src.cli.main import main

if __name__ == "__main__":
    main()
