"""Agent settings.

Resolution order (later wins):
1. dataclass defaults
2. <home>/settings.yaml
3. GROUPLOCK_<FIELD> environment variables (upper-case field name)

The data directory itself comes from GROUPLOCK_HOME (see paths.py).
"""
from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml  # type: ignore

from ..paths import grouplock_home
from ..util.conv import coerce_bool, coerce_float, coerce_int

ENV_PREFIX = "GROUPLOCK_"
MIN_QUEUE_PAUSE_SECONDS = 0.5


@dataclass
class AgentSettings:
    home: Path = field(default_factory=grouplock_home)

    # Identity
    boss_uid: str = ""
    default_nickname: str = "LockBot"

    # Loop intervals
    reconcile_interval_seconds: float = 300.0
    title_check_interval_seconds: float = 60.0
    title_revert_grace_seconds: float = 47.0
    max_title_checks_per_tick: int = 5

    # Pacing bands, [min, max)
    fast_delay_min_seconds: float = 4.0
    fast_delay_max_seconds: float = 5.0
    slow_delay_min_seconds: float = 12.0
    slow_delay_max_seconds: float = 13.0
    target_gap_min_seconds: float = 10.0
    target_gap_max_seconds: float = 15.0

    # Abuse guard
    nickname_change_limit: int = 50
    nickname_cooldown_seconds: float = 300.0
    global_max_concurrent: int = 1
    queue_pause_seconds: float = MIN_QUEUE_PAUSE_SECONDS

    # Liveness
    typing_interval_seconds: float = 600.0
    typing_pause_seconds: float = 1.2
    session_backup_interval_seconds: float = 600.0

    # Reconnect backoff: min(cap, attempts * step)
    backoff_step_seconds: float = 5.0
    backoff_cap_seconds: float = 60.0

    # Remote client factory, "package.module:callable"
    client_factory: str = ""

    # Keep-alive HTTP port
    http_enabled: bool = True
    http_host: str = "0.0.0.0"
    http_port: int = 10000

    log_level: str = "INFO"
    # "json" (one object per line) or "text"
    log_format: str = "json"

    @property
    def lock_store_path(self) -> Path:
        return self.home / "groupData.json"

    @property
    def session_path(self) -> Path:
        return self.home / "appstate.json"

    @property
    def settings_path(self) -> Path:
        return self.home / "settings.yaml"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in dataclasses.fields(self):
            v = getattr(self, f.name)
            out[f.name] = str(v) if isinstance(v, Path) else v
        return out


def _coerce(default: Any, raw: Any) -> Any:
    if isinstance(default, bool):
        return coerce_bool(raw, default=default)
    if isinstance(default, int):
        return coerce_int(raw, default=default, minimum=0)
    if isinstance(default, float):
        return coerce_float(raw, default=default, minimum=0.0)
    return str(raw).strip() if raw is not None else default


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return doc if isinstance(doc, dict) else {}


def load_settings(
    *,
    home: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> AgentSettings:
    """Build settings from defaults, settings.yaml and the environment.

    A malformed settings.yaml raises (yaml.YAMLError); that is a startup
    failure, not something to paper over.
    """
    environ = os.environ if env is None else env
    base = AgentSettings(home=home) if home is not None else AgentSettings()
    doc = _load_yaml(base.settings_path)

    values: Dict[str, Any] = {}
    for f in dataclasses.fields(base):
        if f.name == "home":
            continue
        default = getattr(base, f.name)
        raw: Any = doc.get(f.name) if f.name in doc else None
        env_raw = environ.get(ENV_PREFIX + f.name.upper())
        if env_raw is not None and str(env_raw).strip() != "":
            raw = env_raw
        if raw is None:
            continue
        values[f.name] = _coerce(default, raw)

    settings = dataclasses.replace(base, **values)
    if settings.queue_pause_seconds < MIN_QUEUE_PAUSE_SECONDS:
        settings.queue_pause_seconds = MIN_QUEUE_PAUSE_SECONDS
    if settings.global_max_concurrent < 1:
        settings.global_max_concurrent = 1
    if settings.nickname_change_limit < 1:
        settings.nickname_change_limit = 1
    if not settings.default_nickname.strip():
        settings.default_nickname = AgentSettings.default_nickname
    return settings
