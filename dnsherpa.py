#!/usr/bin/env python3

"""Run dnsherpa from a source checkout.

Puts `src/` on the import path so `./dnsherpa.py` works without
`pip install`. Installed copies use the `dnsherpa` console script instead.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from dnsherpa.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
