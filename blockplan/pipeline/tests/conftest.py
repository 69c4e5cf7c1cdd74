# blockplan/pipeline/tests/conftest.py
from __future__ import annotations

import sys
from pathlib import Path

# Ensure repository root is on sys.path when running pytest from repo root.
ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
