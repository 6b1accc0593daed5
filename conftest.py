from __future__ import annotations

import importlib
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

for name in [
    "teamspace.models",
    "teamspace.ledger",
    "teamspace.notifications",
    "teamspace.realtime.reconcile",
    "teamspace.main",
]:
    importlib.import_module(name)
