from __future__ import annotations

import os
from pathlib import Path


def grouplock_home() -> Path:
    env = os.environ.get("GROUPLOCK_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".grouplock").resolve()


def ensure_home() -> Path:
    home = grouplock_home()
    home.mkdir(parents=True, exist_ok=True)
    return home
