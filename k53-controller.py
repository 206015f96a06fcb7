#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/k53`. This wrapper allows running the
controller as `./k53-controller.py` from a fresh checkout.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from k53.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
