from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from kaliclean.contract_store import ContractStore
from kaliclean.core.errors import ValidationError
from kaliclean.resources import schemas_dir


TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
CONFIG_SCHEMA = "config.schema.json"


def _expand(p: str) -> Path:
    return Path(os.path.expandvars(os.path.expanduser(p)))


def default_config_path() -> Path:
    """
    Default per-user config location.

    - If XDG_CONFIG_HOME is set, use it.
    - Else use ~/.config
    """
    base = os.environ.get("XDG_CONFIG_HOME")
    if isinstance(base, str) and base.strip():
        return Path(base).expanduser() / "kali-clean" / "config.yml"
    return Path("~/.config").expanduser() / "kali-clean" / "config.yml"


@dataclass(frozen=True)
class Settings:
    backup_dir: Path = field(default_factory=lambda: _expand("~/.kali-clean-backups"))
    archive_label: str = "kali-clean-backup"
    timestamp: str = field(default_factory=lambda: datetime.now().strftime(TIMESTAMP_FORMAT))
    sensitive_files: Tuple[str, ...] = ("/etc/apt/sources.list", "/etc/hosts")
    journal_vacuum_size: str = "200M"
    journal_vacuum_time: str = "7d"
    cache_dir: Path = field(default_factory=lambda: _expand("~/.cache"))
    burp_dir: Path = field(default_factory=lambda: _expand("~/BurpSuitePro"))
    downloads_dir: Path = field(default_factory=lambda: _expand("~/Downloads"))
    go_workspace: Path = field(default_factory=lambda: _expand("~/go"))
    skip_operations: Tuple[str, ...] = ()

    @property
    def run_id(self) -> str:
        return f"kali-clean.{self.timestamp}"

    @property
    def log_path(self) -> Path:
        return self.backup_dir / f"kali-clean.{self.timestamp}.log"

    @property
    def trace_path(self) -> Path:
        return self.backup_dir / f"kali-clean.{self.timestamp}.trace.jsonl"


def _contracts() -> ContractStore:
    store = ContractStore(schemas_dir())
    store.load()
    return store


def settings_from_dict(raw: Dict[str, Any], *, base: Optional[Settings] = None) -> Settings:
    errors = _contracts().validate(CONFIG_SCHEMA, raw)
    if errors:
        raise ValidationError(code="config.invalid", message="Configuration validation failed", data={"errors": errors})

    s = base or Settings()
    updates: Dict[str, Any] = {}
    if "backup_dir" in raw:
        updates["backup_dir"] = _expand(raw["backup_dir"])
    if "archive_label" in raw:
        updates["archive_label"] = raw["archive_label"]
    if "sensitive_files" in raw:
        updates["sensitive_files"] = tuple(raw["sensitive_files"])
    journal = raw.get("journal") or {}
    if "vacuum_size" in journal:
        updates["journal_vacuum_size"] = journal["vacuum_size"]
    if "vacuum_time" in journal:
        updates["journal_vacuum_time"] = journal["vacuum_time"]
    paths = raw.get("paths") or {}
    for key in ("cache_dir", "burp_dir", "downloads_dir", "go_workspace"):
        if key in paths:
            updates[key] = _expand(paths[key])
    if "skip_operations" in raw:
        updates["skip_operations"] = tuple(raw["skip_operations"])
    return replace(s, **updates)


def load_settings(config_path: Optional[Path] = None, *, backup_dir: Optional[str] = None) -> Settings:
    """
    Load settings from YAML.

    - An explicit config_path must exist.
    - The default path is optional: missing means built-in defaults.
    - backup_dir (from the command line) wins over the file.
    """
    explicit = config_path is not None
    path = (config_path or default_config_path()).expanduser()

    raw: Dict[str, Any] = {}
    if path.exists():
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ValidationError(code="config.invalid", message=f"Invalid YAML in {path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValidationError(code="config.invalid", message=f"Config root must be a mapping: {path}")
        raw = loaded
    elif explicit:
        raise ValidationError(code="config.not_found", message=f"Config file not found: {path}")

    settings = settings_from_dict(raw)
    if backup_dir:
        settings = replace(settings, backup_dir=_expand(backup_dir))
    return settings
