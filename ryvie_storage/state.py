"""Helpers for managing ryvie-storage runtime state artifacts."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

_STAGE_OUTCOMES_FILENAME = "stage-outcomes.json"


def _default_state_dir() -> Path:
    """Return the default directory for runtime state artifacts."""

    override = os.environ.get("RYVIE_STORAGE_STATE_DIR")
    if override:
        return Path(override)
    return Path("/run/ryvie-storage")


def stage_outcomes_path(*, state_dir: Optional[Path] = None) -> Path:
    """Return the path to the recorded provisioning stage outcomes."""

    base = state_dir if state_dir is not None else _default_state_dir()
    return base / _STAGE_OUTCOMES_FILENAME


def record_stage_outcomes(
    payload: Dict[str, Any], *, state_dir: Optional[Path] = None
) -> Path:
    """Persist stage outcome ``payload`` to ``state_dir`` and return the path."""

    path = stage_outcomes_path(state_dir=state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(payload, indent=2, sort_keys=True)
    path.write_text(text, encoding="utf-8")
    return path


def load_stage_outcomes(*, state_dir: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    """Return previously recorded stage outcomes when available."""

    path = stage_outcomes_path(state_dir=state_dir)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return data


def clear_stage_outcomes(*, state_dir: Optional[Path] = None) -> None:
    """Remove any persisted stage outcomes."""

    path = stage_outcomes_path(state_dir=state_dir)
    try:
        path.unlink()
    except FileNotFoundError:
        return
