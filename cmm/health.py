from __future__ import annotations

import os
from pathlib import Path


def clear_ready(path: str) -> None:
    """Drop a stale marker left by a previous run."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return


def mark_ready(path: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.touch()


def is_ready(path: str) -> bool:
    return os.path.isfile(path)
