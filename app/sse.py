import json
from typing import Dict, Optional

KEEP_ALIVE = ": keep-alive\n\n"


def format_sse(event: Dict, event_id: Optional[int] = None) -> str:
    event_type = event.get("event_type", "message")
    payload = json.dumps(event, ensure_ascii=False, default=str)
    head = f"id: {event_id}\n" if event_id is not None else ""
    return f"{head}event: {event_type}\ndata: {payload}\n\n"
