"""
Kaiwa - live voice conversation assistant.

Entry point for running from a checkout without installing:
    python run.py --mode mic
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent / "src"))

from kaiwa.main import main  # noqa: E402


if __name__ == '__main__':
    sys.exit(main())
