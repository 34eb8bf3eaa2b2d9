# -*- coding: utf-8 -*-
"""Configuration management (JSON on disk) and the objects built from it."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Optional

from . import db
from .ai import AiService, FixtureAiService, OfflineAiService
from .clock import Clock, SystemClock
from .errors import VaultLockedError
from .scheduler import BackoffPolicy
from .sql import SQLEntriesAdapter
from .vault import Vault

APP_NAME = "abcjournal"

DEFAULT_CONFIG: Dict[str, object] = {
    "db_path": db.DB_PATH,
    # "offline" disables AI; "fixture" serves canned responses.
    "ai_mode": "offline",
    "ai_fixture_path": None,
    "retry_base_delay": 2.0,
    "retry_max_delay": 300.0,
    "retry_max_attempts": 5,
    "encryption_enabled": False,
}

AI_MODES = ("offline", "fixture")


def _config_dir() -> Path:
    """Return the config directory path for this platform."""
    override = os.environ.get("ABCJOURNAL_CONFIG_DIR")
    if override:
        return Path(override)
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~\\AppData\\Roaming"))
        return Path(base) / APP_NAME
    base = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(base) / APP_NAME

def _config_path() -> Path:
    return _config_dir() / "config.json"

def load_config() -> Dict[str, object]:
    """Load the merged configuration (defaults + file + environment)."""
    path = _config_path()
    if not path.exists():
        save_config(DEFAULT_CONFIG)
        merged = json.loads(json.dumps(DEFAULT_CONFIG))
    else:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        merged = json.loads(json.dumps(DEFAULT_CONFIG))
        merged.update(data)
    env_db = os.environ.get("ABCJOURNAL_DB")
    if env_db:
        merged["db_path"] = env_db
    return merged

def save_config(cfg: Dict[str, object]) -> None:
    """Persist *cfg* to the JSON config file."""
    _config_dir().mkdir(parents=True, exist_ok=True)
    with _config_path().open("w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)


# ---------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------

def build_ai_service(cfg: Dict[str, object]) -> AiService:
    """Return the AI service selected by ``ai_mode``."""
    mode = str(cfg.get("ai_mode", "offline"))
    if mode == "offline":
        return OfflineAiService()
    if mode == "fixture":
        path = cfg.get("ai_fixture_path")
        return FixtureAiService(path=str(path) if path else None)
    raise ValueError(f"Unknown ai_mode {mode!r}; expected one of {AI_MODES}")

def build_backoff_policy(cfg: Dict[str, object]) -> BackoffPolicy:
    max_attempts = cfg.get("retry_max_attempts")
    return BackoffPolicy(
        base_delay=float(cfg.get("retry_base_delay", 2.0)),
        max_delay=float(cfg.get("retry_max_delay", 300.0)),
        max_attempts=int(max_attempts) if max_attempts is not None else None,
    )

async def open_store(
    cfg: Dict[str, object],
    clock: Optional[Clock] = None,
    passphrase: Optional[str] = None,
) -> SQLEntriesAdapter:
    """Open the configured database and return an adapter bound to it.

    With ``encryption_enabled`` the vault is unlocked with *passphrase*
    (created on first use) and entry text is encrypted at rest.
    """
    clock = clock or SystemClock()
    conn = await db.connect_db(str(cfg.get("db_path") or db.DB_PATH))
    cipher = None
    try:
        if cfg.get("encryption_enabled"):
            if not passphrase:
                raise VaultLockedError("Passphrase required to open an encrypted journal")
            vault = Vault(conn, clock)
            if await vault.is_initialized():
                cipher = await vault.unlock(passphrase)
            else:
                cipher = await vault.initialize(passphrase)
    except BaseException:
        await conn.close()
        raise
    return SQLEntriesAdapter(conn, clock, cipher=cipher)
