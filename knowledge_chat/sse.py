import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict


def format_sse_event(event_type: str, data: Dict[str, Any]) -> str:
    payload = json.dumps(data, ensure_ascii=False, default=str)
    return f"event: {event_type}\ndata: {payload}\n\n"


async def sse_frames(events: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[str]:
    """Frame coordinator events as SSE, numbering them in delivery order."""
    seq = 0
    try:
        async for event in events:
            seq += 1
            data = dict(event)
            event_type = data.pop("type")
            payload = {"seq": seq, "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"), **data}
            yield format_sse_event(event_type, payload)
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()
