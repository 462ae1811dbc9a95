"""Event-stream framing.

Outgoing events are single-line JSON payloads (``data: {...}\\n\\n``).
``EventDecoder`` reads the same framing back: frames are split on blank
lines, then each line on its field prefix.
"""
import json
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional


def format_event(data: dict) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def token_event(token: str) -> str:
    return format_event({"token": token})


def title_event(title: str) -> str:
    return format_event({"newTitle": title})


def error_event(message: str) -> str:
    return format_event({"error": message})


def done_event(session_id: Optional[int], new_title: Optional[str] = None) -> str:
    payload = {"done": True, "sessionId": session_id}
    if new_title is not None:
        payload["newTitle"] = new_title
    return format_event(payload)


@dataclass
class Event:
    data: str
    event: str = "message"
    id: Optional[str] = None

    def json(self):
        return json.loads(self.data)


def decode_frame(frame: str) -> Optional[Event]:
    """Decode one blank-line-delimited frame. Comment-only frames give None."""
    data_lines = []
    event_name = "message"
    event_id = None

    for line in frame.splitlines():
        if not line or line.startswith(":"):
            continue
        field, sep, value = line.partition(":")
        if not sep:
            value = ""
        elif value.startswith(" "):
            value = value[1:]

        if field == "data":
            data_lines.append(value)
        elif field == "event":
            event_name = value
        elif field == "id":
            event_id = value

    if not data_lines:
        return None
    return Event(data="\n".join(data_lines), event=event_name, id=event_id)


class EventDecoder:
    """Incremental decoder; text may arrive split at any byte boundary."""

    def __init__(self):
        self._buffer = ""
        self._pending_cr = ""

    def feed(self, text: str) -> List[Event]:
        text = self._pending_cr + text
        # a trailing CR may be the first half of a CRLF split across chunks
        self._pending_cr = "\r" if text.endswith("\r") else ""
        if self._pending_cr:
            text = text[:-1]
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")
        events = []
        while "\n\n" in self._buffer:
            frame, self._buffer = self._buffer.split("\n\n", 1)
            event = decode_frame(frame)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[Event]:
        frame, self._buffer = self._buffer, ""
        self._pending_cr = ""
        event = decode_frame(frame)
        return [event] if event is not None else []


def iter_events(chunks: Iterable[str]) -> Iterator[Event]:
    decoder = EventDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()
