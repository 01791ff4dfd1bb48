import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

INPUT_TOKEN_FIELDS = ["input_tokens", "prompt_tokens", "promptTokens", "usedTokens"]
OUTPUT_TOKEN_FIELDS = ["output_tokens", "completion_tokens", "completionTokens"]
TOTAL_TOKEN_FIELDS = ["total_tokens", "totalTokens", "usedTokens"]

USAGE_ROLES = ("chat", "system")


def _empty_usage() -> Dict[str, int]:
    return {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}


def _pick_int(obj: Any, keys: List[str]) -> int:
    for key in keys:
        if isinstance(obj, dict):
            val = obj.get(key)
        else:
            val = getattr(obj, key, None)
        # bool is an int subclass; never a token count
        if isinstance(val, int) and not isinstance(val, bool) and val > 0:
            return val
    return 0


def normalize_usage(usage: Any) -> Dict[str, int]:
    """
    Collapse provider-specific usage metadata into one record.

    Each concept is read from a synonym list in priority order and the first
    positive integer wins. A missing total falls back to input + output.
    """
    if usage is None:
        return _empty_usage()
    input_tokens = _pick_int(usage, INPUT_TOKEN_FIELDS)
    output_tokens = _pick_int(usage, OUTPUT_TOKEN_FIELDS)
    total_tokens = _pick_int(usage, TOTAL_TOKEN_FIELDS)
    if total_tokens == 0:
        total_tokens = input_tokens + output_tokens
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": total_tokens,
    }


class UsageAccountant:
    def __init__(self, model_name_chat: str = "", model_name_system: str = "") -> None:
        self.model_name_chat = model_name_chat
        self.model_name_system = model_name_system
        self.events: List[Dict[str, Any]] = []
        self._by_role: Dict[str, Dict[str, int]] = {r: _empty_usage() for r in USAGE_ROLES}
        self._by_phase: Dict[str, Dict[str, int]] = {}
        self._lock = threading.Lock()

    def record(
        self,
        phase: str,
        usage: Any,
        role: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, int]:
        if role not in USAGE_ROLES:
            raise ValueError(f"Unknown usage role: {role}")
        norm = normalize_usage(usage)
        with self._lock:
            for bucket in (self._by_role[role], self._by_phase.setdefault(phase, _empty_usage())):
                bucket["input_tokens"] += norm["input_tokens"]
                bucket["output_tokens"] += norm["output_tokens"]
                bucket["total_tokens"] += norm["total_tokens"]
            event = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "phase": phase,
                "role": role,
                **norm,
                "metadata": metadata or {},
            }
            if usage is None:
                event["metadata"]["usage_missing"] = True
            self.events.append(event)
        return norm

    def total(self) -> Dict[str, int]:
        with self._lock:
            out = _empty_usage()
            for bucket in self._by_role.values():
                for key in out:
                    out[key] += bucket[key]
            return out

    def phase_usage(self, phase: str) -> Dict[str, int]:
        with self._lock:
            return dict(self._by_phase.get(phase, _empty_usage()))

    def tokens_by_phase(self) -> Dict[str, int]:
        with self._lock:
            return {p: u["total_tokens"] for p, u in self._by_phase.items()}

    def snapshot(self) -> Dict[str, Any]:
        # Shape of the `stats` event payload.
        total = self.total()
        with self._lock:
            return {
                "model_name": self.model_name_chat,
                "model_name_chat": self.model_name_chat,
                "model_name_system": self.model_name_system,
                "usage": total,
                "usage_chat": dict(self._by_role["chat"]),
                "usage_system": dict(self._by_role["system"]),
                "phase_usage": {p: u["total_tokens"] for p, u in self._by_phase.items()},
            }

    def to_dict(self) -> Dict[str, Any]:
        snap = self.snapshot()
        with self._lock:
            snap["by_phase"] = {p: dict(u) for p, u in self._by_phase.items()}
            snap["calls"] = len(self.events)
        return snap
