from __future__ import annotations

import sys
from pathlib import Path

import pytest


# Ensure the repo root (which contains `cardiosim/`) is importable even when pytest
# is invoked with a specific test file path.
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


@pytest.fixture(autouse=True)
def output_root(tmp_path, monkeypatch) -> Path:
    """Send every relative output directory into the test's tmp dir."""
    root = tmp_path / "testoutput"
    monkeypatch.setenv("CARDIOSIM_OUTPUT", str(root))
    return root
