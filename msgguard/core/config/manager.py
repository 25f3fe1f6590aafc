from __future__ import annotations

import os
from typing import Any, Dict, Optional

from pydantic import ValidationError

from msgguard.core.config.io import (
    ReadResult,
    atomic_write_json,
    read_json_file,
    recover_from_corrupt,
    snapshot_last_known_good,
)
from msgguard.core.config.models import CONFIG_FILES, PipelineConfig
from msgguard.core.config.paths import ConfigFsPaths
from msgguard.core.errors import ConfigError


class ConfigManager:
    """
    Loads config/*.json into a validated PipelineConfig.

    Missing files are created from defaults; corrupt JSON is moved aside and
    restored from the last-known-good snapshot when one exists. Validation is
    strict: an invalid file (notably classifier.json) is a startup error.
    """

    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger=None, ops=None, read_only: bool = False):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger
        self.ops = ops
        self.read_only = read_only
        self._cfg: Optional[PipelineConfig] = None
        self._raw_last: Dict[str, Dict[str, Any]] = {}

    # ---------- public API ----------
    def load_all(self) -> PipelineConfig:
        os.makedirs(self.fs.config_dir, exist_ok=True)
        os.makedirs(self.fs.backups_dir, exist_ok=True)
        os.makedirs(self.fs.last_known_good_dir, exist_ok=True)

        files = self._load_raw_files()
        max_backups = int(((files.get("app.json") or {}).get("backups") or {}).get("max_backups_per_file", 10))
        ensured = self._ensure_defaults(files, max_backups=max_backups)
        try:
            cfg = self._validate_all(ensured)
        except ConfigError as e:
            if self.ops is not None:
                self.ops.alert("config.load_failed", {"error": str(e.context.get("detail", ""))[:500]}, trace_id="config")
            raise
        self._cfg = cfg
        self._raw_last = {k: dict(v) for k, v in ensured.items()}
        if not self.read_only:
            snapshot_last_known_good(self.fs.config_dir, self.fs.last_known_good_dir)
        return cfg

    def get(self) -> PipelineConfig:
        if self._cfg is None:
            raise ConfigError("Config not loaded.")
        return self._cfg

    def raw(self, filename: str) -> Dict[str, Any]:
        return dict(self._raw_last.get(filename) or {})

    def save(self, filename: str, data: Dict[str, Any]) -> PipelineConfig:
        """
        Atomic write + backup, then reload and validate the whole set.
        If validation fails the previous file stays available in backups/.
        """
        if self.read_only:
            raise ConfigError("Config manager is read-only.")
        if filename not in CONFIG_FILES:
            raise ConfigError(f"Unknown config file {filename!r}.")
        if not isinstance(data, dict):
            raise ConfigError("Config data must be an object.")
        max_backups = int((self.get().app.backups or {}).get("max_backups_per_file", 10))
        atomic_write_json(self.fs.file(filename), data, self.fs.backups_dir, max_backups=max_backups)
        return self.load_all()

    # ---------- internals ----------
    def _load_raw_files(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for name in CONFIG_FILES:
            path = self.fs.file(name)
            rr: ReadResult = read_json_file(path)
            if rr.ok:
                out[name] = rr.data
                continue
            if rr.error and rr.error.startswith("corrupt_json"):
                data, recovered = recover_from_corrupt(path, self.fs.backups_dir, self.fs.last_known_good_dir, max_backups=10)
                if self.logger:
                    self.logger.warning(f"Corrupt config {name} -> recovered={recovered}")
                out[name] = data
                continue
            # missing or unreadable: defaults later
            out[name] = {}
        return out

    def _ensure_defaults(self, files: Dict[str, Dict[str, Any]], *, max_backups: int) -> Dict[str, Dict[str, Any]]:
        out = dict(files)
        for name, model in CONFIG_FILES.items():
            if out.get(name):
                continue
            dflt = model().model_dump(mode="json")
            out[name] = dflt
            if self.logger:
                self.logger.warning(f"Missing config {name}; creating defaults.")
            if not self.read_only:
                atomic_write_json(self.fs.file(name), dflt, self.fs.backups_dir, max_backups=max_backups)
        return out

    def _validate_all(self, files: Dict[str, Dict[str, Any]]) -> PipelineConfig:
        parsed: Dict[str, Any] = {}
        for name, model in CONFIG_FILES.items():
            try:
                parsed[name[: -len(".json")]] = model.model_validate(files.get(name) or {})
            except ValidationError as e:
                raise ConfigError(f"{name} invalid.", file=name, detail=str(e)) from e
        return PipelineConfig(**parsed)
