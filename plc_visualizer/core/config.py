# plc_visualizer/core/config.py
from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, PrivateAttr
from pydantic_settings import BaseSettings

from plc_visualizer.core.types import (
    DataCollectionSettings,
    NotificationSettings,
    PLCConnectionSettings,
)
from plc_visualizer.core.validate_cfg import validate_cfg


class Settings(BaseSettings):
    # cookie session secret
    session_secret: str = Field(default="change-me-please", validation_alias="SESSION_SECRET")

    # main YAML (override with CONFIG_FILE)
    config_file: str = Field(default="config.yaml", validation_alias="CONFIG_FILE")

    # users JSON (override with ACCOUNTS_FILE)
    accounts_file: str = Field(default="data/accounts.json", validation_alias="ACCOUNTS_FILE")

    # wins over db.url from the YAML
    database_url: Optional[str] = Field(default=None, validation_alias="DATABASE_URL")

    _cfg: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _config_path: Path | None = PrivateAttr(default=None)
    _accounts_path: Path | None = PrivateAttr(default=None)

    backups_dir: str = "./data/backups"
    backups_keep: int = 10

    # ───────── paths ─────────
    @property
    def config_path(self) -> Path:
        if self._config_path is None:
            p = Path(self.config_file)
            if not p.is_absolute():
                p = Path.cwd() / p
            self._config_path = p
        return self._config_path

    @property
    def accounts_path(self) -> str:
        """Absolute path of the users JSON; its directory is created on demand."""
        if self._accounts_path is None:
            p = Path(self.accounts_file)
            if not p.is_absolute():
                p = Path.cwd() / p
            p.parent.mkdir(parents=True, exist_ok=True)
            self._accounts_path = p
        return str(self._accounts_path)

    # ───────── YAML cfg ─────────
    def get_cfg(self) -> Dict[str, Any]:
        return self._cfg

    def set_cfg(self, data: Dict[str, Any]) -> None:
        self._cfg = data or {}

    def load_yaml_config(self) -> None:
        p = self.config_path
        if p.exists():
            with open(p, "r", encoding="utf-8") as f:
                self._cfg = yaml.safe_load(f) or {}
                validate_cfg(self._cfg)  # raises ValueError
        else:
            self._cfg = {}

    def save_yaml_config(self, new_cfg: dict) -> str:
        """
        Write the YAML to disk, keeping a timestamped copy of the previous file
        in backups_dir (only the last N are kept).
        Returns the backup file name, or '' if there was nothing to back up.
        """
        validate_cfg(new_cfg)
        cfg_path = self.config_path.resolve()

        bsec = (new_cfg or {}).get("backups", {}) or {}
        backups_dir = Path(bsec.get("dir", self.backups_dir)).resolve()
        backups_keep = int(bsec.get("keep", self.backups_keep) or 0)

        backup_name = ""
        if cfg_path.exists():
            backups_dir.mkdir(parents=True, exist_ok=True)
            ts = time.strftime("%Y%m%d-%H%M%S")
            # config-20250918-153012.yaml.bak
            backup_name = f"{cfg_path.stem}-{ts}{cfg_path.suffix}.bak"
            shutil.copy2(cfg_path, backups_dir / backup_name)

            if backups_keep > 0:
                patt = f"{cfg_path.stem}-*{cfg_path.suffix}.bak"
                files = sorted(backups_dir.glob(patt))
                extra = len(files) - backups_keep
                for old in files[:max(0, extra)]:
                    old.unlink(missing_ok=True)

        cfg_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = cfg_path.with_suffix(cfg_path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            yaml.safe_dump(new_cfg, f, allow_unicode=True, sort_keys=False)
        tmp.replace(cfg_path)

        self._cfg = new_cfg
        return backup_name

    def update_section(self, name: str, values: Dict[str, Any]) -> str:
        cfg = dict(self._cfg)
        sec = dict(cfg.get(name) or {})
        sec.update(values)
        cfg[name] = sec
        return self.save_yaml_config(cfg)

    # ───────── sections ─────────
    @property
    def connection(self) -> PLCConnectionSettings:
        return PLCConnectionSettings.from_cfg(self._cfg.get("connection", {}))

    @property
    def data_collection(self) -> DataCollectionSettings:
        return DataCollectionSettings.from_cfg(self._cfg.get("data_collection", {}))

    @property
    def notifications(self) -> NotificationSettings:
        return NotificationSettings.from_cfg(self._cfg.get("notifications", {}))

    @property
    def history(self) -> Dict[str, Any]:
        return self._cfg.get("history", {}) or {}

    @property
    def realtime(self) -> Dict[str, Any]:
        return self._cfg.get("realtime", {}) or {}

    @property
    def offline(self) -> Dict[str, Any]:
        return self._cfg.get("offline", {}) or {}

    @property
    def demo(self) -> Dict[str, Any]:
        return self._cfg.get("demo", {}) or {}

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (self._cfg.get("db", {}) or {}).get("url", "sqlite:///./data/data.db")


settings = Settings()
