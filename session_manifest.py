import json
import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_SESSIONS_DIR = Path("storage") / "deep_research" / "sessions"

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ManifestStore:
    def __init__(self, root: str | Path = "") -> None:
        self.root = Path(root or os.getenv("RESEARCH_SESSIONS_DIR", "") or DEFAULT_SESSIONS_DIR)

    def session_dir(self, session_id: str) -> Path:
        sid = str(session_id or "").strip()
        if not sid or not _SAFE_ID_RE.match(sid) or sid in {".", ".."}:
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.root / sid

    def manifest_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "manifest.json"

    def new_manifest(self, session_id: str, budgets: Dict[str, Any]) -> Dict[str, Any]:
        now = _now_iso()
        return {
            "session_id": session_id,
            "created_at": now,
            "updated_at": now,
            "status": "running",
            "budgets": dict(budgets),
            "tokens_by_phase": {},
            "llm_turns_used": 0,
            "counts": {},
            "phases": {},
            "phase": "",
            "phase_event": "",
            "early_synthesis_triggered": False,
            "early_synthesis_reason": "",
            "error": "",
        }

    def write(self, session_id: str, manifest: Dict[str, Any]) -> Path:
        path = self.manifest_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(manifest, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)
        return path

    def read(self, session_id: str) -> Optional[Dict[str, Any]]:
        path = self.manifest_path(session_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def update(
        self,
        session_id: str,
        update: Optional[Dict[str, Any]] = None,
        phase: str = "",
        phase_event: str = "",
    ) -> Dict[str, Any]:
        current = self.read(session_id) or self.new_manifest(session_id, budgets={})
        changes = dict(update or {})
        # Nested maps merge; everything else is last-write-wins.
        for key in ("counts", "tokens_by_phase"):
            if isinstance(changes.get(key), dict):
                merged = dict(current.get(key) or {})
                merged.update(changes.pop(key))
                current[key] = merged
        current.update(changes)
        current["updated_at"] = _now_iso()

        if phase and phase_event:
            phases = current.setdefault("phases", {})
            marker = phases.setdefault(phase, {})
            if phase_event == "start":
                marker["started_at"] = current["updated_at"]
            elif phase_event == "complete":
                marker["completed_at"] = current["updated_at"]
            current["phase"] = phase
            current["phase_event"] = phase_event

        self.write(session_id, current)
        return current

    def delete(self, session_id: str) -> bool:
        base = self.session_dir(session_id)
        if not base.exists():
            return False
        shutil.rmtree(base)
        return True
