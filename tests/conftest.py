"""Pytest configuration.

The application code lives in the top-level `mailsync/` package. Depending on
how pytest is invoked and the active import mode, the repository root may not
be on `sys.path`, which breaks imports like `from mailsync.modules...`.

This file adds the repo root to `sys.path` during test collection.
"""

from __future__ import annotations

import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]

# Insert at the front so local imports win over similarly named packages.
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))
