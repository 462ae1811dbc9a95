import logging
import re

import anyio
import statsd

from chatrelay.errors import CapabilityUnavailable, UpstreamError
from chatrelay.llm import ChatModelClient
from chatrelay.models import DEFAULT_TITLE

logger = logging.getLogger(__name__)

TITLE_INSTRUCTION = "You are a title generator. Produce a 2-3 word title and nothing else."
SEED_CHARS = 500
MAX_TITLE_LENGTH = 35
FALLBACK_TITLE = "Chat"
TITLE_TIMEOUT = 20.0

_STRIP_CHARS = re.compile(r"[\"'\\`*#\[\]()<>:.!?]")
_WHITESPACE = re.compile(r"\s+")


def clean_title(text: str) -> str:
    if not text:
        return ""
    cleaned = _STRIP_CHARS.sub("", text)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    if len(cleaned) > MAX_TITLE_LENGTH:
        cleaned = cleaned[:MAX_TITLE_LENGTH].rstrip() + "..."
    return cleaned


def fallback_title(seed: str) -> str:
    title = clean_title(seed)
    if not title or title == DEFAULT_TITLE:
        return FALLBACK_TITLE
    return title


class TitleGenerator:
    def __init__(self, model: ChatModelClient, metrics: statsd.StatsClient, timeout: float = TITLE_TIMEOUT):
        self.model = model
        self.metrics = metrics
        self.timeout = timeout

    async def generate(self, seed: str) -> str:
        """Derive a short title from the first user turn.

        Never returns the default title: on any model failure or an unusable
        answer the cleaned seed text itself becomes the title.
        """
        seed = (seed or "").strip()
        prompt = f'Write a short 2-3 word title for the following text. Reply with the title only. Text: "{seed[:SEED_CHARS]}"'

        try:
            with anyio.fail_after(self.timeout):
                raw = await self.model.complete([{"role": "user", "content": prompt}], system_instruction=TITLE_INSTRUCTION)
        except (UpstreamError, CapabilityUnavailable, TimeoutError) as exc:
            logger.warning("Title generation failed, using fallback: %s", exc)
            raw = ""

        title = clean_title(raw)
        if not title or title == DEFAULT_TITLE:
            self.metrics.incr("titles.fallback")
            return fallback_title(seed)

        self.metrics.incr("titles.generated")
        return title
