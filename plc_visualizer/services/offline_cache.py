# plc_visualizer/services/offline_cache.py
from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List

log = logging.getLogger("offline")


def _now_iso() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


class OfflineCache:
    """
    Last good parameter snapshot plus history records that could not be written.
    File layout:
      {"updated_at": "...", "parameters": [...], "pending_history": [...]}
    """

    def __init__(self, path: str, max_pending: int = 0) -> None:
        self.path = str(Path(path).resolve())
        self.max_pending = max_pending      # 0 = no cap
        self._lock = threading.Lock()

    # ── file io ─────────────────────────────────────────────────────────────
    def _empty(self) -> Dict[str, Any]:
        return {"updated_at": None, "parameters": [], "pending_history": []}

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return self._empty()
        with open(self.path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except ValueError:
                data = None
        if not isinstance(data, dict):
            # broken file: move it aside and start clean
            backup = self.path + ".corrupt." + datetime.utcnow().strftime("%Y%m%d%H%M%S")
            os.replace(self.path, backup)
            log.warning(f"[offline] corrupt cache moved to {backup}")
            return self._empty()
        data.setdefault("parameters", [])
        data.setdefault("pending_history", [])
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        tmp = self.path + ".tmp"
        data["updated_at"] = _now_iso()
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    # ── snapshot ────────────────────────────────────────────────────────────
    def save_snapshot(self, parameters: List[Dict[str, Any]]) -> None:
        with self._lock:
            data = self._load()
            data["parameters"] = list(parameters)
            self._save(data)

    def load_snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load().get("parameters") or [])

    # ── pending history ─────────────────────────────────────────────────────
    def queue_history(self, *entries: Dict[str, Any]) -> int:
        """Append records in one write; beyond max_pending the oldest are dropped. Returns the drop count."""
        if not entries:
            return 0
        with self._lock:
            data = self._load()
            pending = data["pending_history"]
            pending.extend(entries)
            dropped = 0
            if self.max_pending > 0 and len(pending) > self.max_pending:
                dropped = len(pending) - self.max_pending
                data["pending_history"] = pending[dropped:]
            self._save(data)
        if dropped:
            log.warning(f"[offline] queue full ({self.max_pending}), dropped {dropped} oldest records")
        return dropped

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._load().get("pending_history"))

    def pending_history(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load().get("pending_history") or [])

    def replay(self, writer: Callable[[Dict[str, Any]], None]) -> int:
        """
        Hand queued records to `writer` in order. Stops at the first failure;
        that record and the ones after it stay queued. Returns how many went through.
        """
        with self._lock:
            data = self._load()
            pending = list(data.get("pending_history") or [])
            if not pending:
                return 0
            done = 0
            try:
                for entry in pending:
                    writer(entry)
                    done += 1
            except Exception as e:
                log.warning(f"[offline] replay stopped after {done}/{len(pending)}: {e}")
            data["pending_history"] = pending[done:]
            self._save(data)
        if done:
            log.info(f"[offline] replayed {done} history records")
        return done
