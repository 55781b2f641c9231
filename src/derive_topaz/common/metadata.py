"""
Run metadata for derive_topaz.
"""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np


def _to_json(value):
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def write_metadata(output_dir: Path, metadata: dict) -> Path:
    """
    Write run parameters, outlet diagnostics and output paths as JSON.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    out_path = output_dir / "run_metadata.json"
    with out_path.open("w", encoding="utf-8") as fp:
        json.dump(metadata, fp, indent=2, default=_to_json)
    return out_path
