from __future__ import annotations

import os
from pathlib import Path


ROOT_DIR = Path(__file__).resolve().parent.parent
OUTPUT_ENV_VAR = "CARDIOSIM_OUTPUT"
DEFAULT_OUTPUT_DIR = ROOT_DIR / "testoutput"


def output_root() -> Path:
    value = os.environ.get(OUTPUT_ENV_VAR, "")
    return Path(value) if value else DEFAULT_OUTPUT_DIR


def resolve_output_dir(directory: str | Path) -> Path:
    path = Path(directory)
    if path.is_absolute():
        return path
    return output_root() / path

