import logging
from typing import List, Optional, Union

from chatrelay.errors import StoreUnavailable
from chatrelay.models import flatten_content, parse_content
from chatrelay.store import SessionStore

logger = logging.getLogger(__name__)


class ContextAssembler:
    def __init__(self, store: SessionStore, system_instruction: str, history_limit: int = 16):
        self.store = store
        self.system_instruction = system_instruction
        self.history_limit = history_limit

    def load_history(self, session_id: Optional[int]) -> List[dict]:
        if session_id is None:
            return []
        try:
            records = self.store.get_recent_messages(session_id, self.history_limit)
        except StoreUnavailable as exc:
            logger.warning("History unavailable for session_id=%s, continuing without it: %s", session_id, exc)
            return []

        return [
            {"role": record.role, "content": flatten_content(parse_content(record.content, record.type))}
            for record in records
        ]

    def build(self, session_id: Optional[int], user_content: Union[str, List[dict]]) -> List[dict]:
        """Return ``[system, *history, new user turn]`` for the model.

        Call before the new user turn is persisted, otherwise it would appear
        twice. ``user_content`` may be a list of content parts (text plus an
        inline image); history turns are always flattened to text.
        """
        return (
            [{"role": "system", "content": self.system_instruction}]
            + self.load_history(session_id)
            + [{"role": "user", "content": user_content}]
        )
