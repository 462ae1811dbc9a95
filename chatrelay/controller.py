import base64
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Union

import statsd
from fastapi.concurrency import run_in_threadpool

from chatrelay.context import ContextAssembler
from chatrelay.errors import ClientInputError, LimitExceeded, StoreUnavailable
from chatrelay.events import done_event, error_event
from chatrelay.llm import ChatModelClient
from chatrelay.models import ImageTurn, TextTurn, TurnContent, flatten_content, serialize_content
from chatrelay.ocr import OcrClient
from chatrelay.relay import StreamRelay
from chatrelay.settings import Settings
from chatrelay.store import SessionStore
from chatrelay.titles import TitleGenerator

logger = logging.getLogger(__name__)

VISION_CAPABILITY = "vision"
DEFAULT_VISION_PROMPT = "Describe and analyze this image in detail."
MODEL_UNAVAILABLE_MESSAGE = "The assistant is not configured on this server."

# clients send the string "null" when they have no session yet
_NULL_SESSION_IDS = ("", "null", "undefined", "none")


@dataclass
class ChatTurn:
    user_id: str
    kind: str # text | image
    message: str
    session_id: Optional[int] = None
    image: Optional[bytes] = None
    filename: Optional[str] = None
    media_type: Optional[str] = None
    mode: str = "ocr" # ocr | vision


@dataclass
class PreparedTurn:
    stored: TurnContent
    prompt: Union[str, List[dict]]


def parse_session_id(raw) -> Optional[int]:
    if raw is None:
        return None
    raw = str(raw).strip()
    if raw.lower() in _NULL_SESSION_IDS:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class ChatController:
    """Handles one chat request from validation to the terminal event."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        model: ChatModelClient,
        ocr: OcrClient,
        metrics: statsd.StatsClient,
    ):
        self.settings = settings
        self.store = store
        self.model = model
        self.ocr = ocr
        self.metrics = metrics
        self.assembler = ContextAssembler(store, settings.system_instruction, settings.history_limit)
        self.titles = TitleGenerator(model, metrics)

    def validate(
        self,
        user_id: Optional[str],
        kind: Optional[str],
        message: Optional[str],
        session_id=None,
        image: Optional[bytes] = None,
        filename: Optional[str] = None,
        media_type: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> ChatTurn:
        user_id = (user_id or "").strip()
        message = (message or "").strip()
        if not user_id:
            raise ClientInputError("userId is required")

        if kind == "image" and image:
            if len(image) > self.settings.max_image_bytes:
                raise ClientInputError("image is too large")
            return ChatTurn(
                user_id=user_id,
                kind="image",
                message=message,
                session_id=parse_session_id(session_id),
                image=image,
                filename=filename or "image.jpg",
                media_type=media_type or "image/jpeg",
                mode="vision" if mode == "vision" else "ocr",
            )

        if not message:
            raise ClientInputError("a message or an image is required")
        return ChatTurn(user_id=user_id, kind="text", message=message, session_id=parse_session_id(session_id))

    async def resolve_session(self, turn: ChatTurn) -> Optional[int]:
        """Return the turn's session id, creating a session when it has none.

        A session id that is unknown or owned by another user counts as none.
        Without a database the supplied id is passed through unverified.
        """
        try:
            if turn.session_id is not None:
                chat_session = await run_in_threadpool(self.store.get_session, turn.session_id)
                if chat_session is not None and chat_session.user_id == turn.user_id:
                    return chat_session.id
            chat_session = await run_in_threadpool(self.store.create_session, turn.user_id)
            logger.info("Created session_id=%s for user_id=%s", chat_session.id, turn.user_id)
            return chat_session.id
        except StoreUnavailable as exc:
            logger.warning("Session store unavailable for user_id=%s, chat will not be saved: %s", turn.user_id, exc)
            return turn.session_id

    async def check_vision_quota(self, user_id: str) -> None:
        limit = self.settings.vision_daily_limit
        try:
            allowed = await run_in_threadpool(self.store.increment_daily_usage, user_id, VISION_CAPABILITY, limit)
        except StoreUnavailable as exc:
            if self.settings.usage_fail_open:
                logger.warning("Usage counter unavailable for user_id=%s, allowing vision: %s", user_id, exc)
                return
            logger.warning("Usage counter unavailable for user_id=%s, denying vision: %s", user_id, exc)
            raise LimitExceeded(VISION_CAPABILITY, limit) from exc
        if not allowed:
            raise LimitExceeded(VISION_CAPABILITY, limit)

    async def prepare_turn(self, turn: ChatTurn) -> PreparedTurn:
        if turn.kind == "text":
            return PreparedTurn(stored=TextTurn(text=turn.message), prompt=turn.message)

        if turn.mode == "vision":
            await self.check_vision_quota(turn.user_id)
            stored = ImageTurn(
                mode="vision",
                caption=turn.message,
                filename=turn.filename,
                media_type=turn.media_type,
            )
            encoded = base64.b64encode(turn.image).decode("ascii")
            prompt = [
                {"type": "text", "text": turn.message or DEFAULT_VISION_PROMPT},
                {"type": "image_url", "image_url": {"url": f"data:{turn.media_type};base64,{encoded}"}},
            ]
            return PreparedTurn(stored=stored, prompt=prompt)

        extracted = await self.ocr.extract_text(turn.image, turn.filename, turn.media_type)
        if extracted is not None and len(extracted) <= 2:
            extracted = None
        stored = ImageTurn(
            mode="ocr",
            caption=turn.message,
            filename=turn.filename,
            media_type=turn.media_type,
            extracted_text=extracted,
        )
        return PreparedTurn(stored=stored, prompt=flatten_content(stored))

    async def handle(
        self,
        turn: ChatTurn,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """Run one validated turn, yielding event-stream chunks."""
        self.metrics.incr("chat")
        start_time = time.time()

        session_id = await self.resolve_session(turn)

        if not self.model.available:
            self.metrics.incr("chat.capability_unavailable")
            yield error_event(MODEL_UNAVAILABLE_MESSAGE)
            yield done_event(session_id)
            return

        try:
            prepared = await self.prepare_turn(turn)
        except LimitExceeded as exc:
            self.metrics.incr("chat.limit_exceeded")
            logger.info("Vision limit reached for user_id=%s", turn.user_id)
            yield error_event(exc.message)
            yield done_event(session_id)
            return

        messages = await run_in_threadpool(self.assembler.build, session_id, prepared.prompt)

        if session_id is not None:
            content, content_type = serialize_content(prepared.stored)
            try:
                await run_in_threadpool(self.store.append_message, session_id, "user", content, content_type)
            except StoreUnavailable as exc:
                logger.warning("Could not persist user turn for session_id=%s: %s", session_id, exc)

        relay = StreamRelay(
            model=self.model,
            store=self.store,
            titles=self.titles,
            metrics=self.metrics,
            session_id=session_id,
            messages=messages,
            title_seed=flatten_content(prepared.stored),
            is_disconnected=is_disconnected,
        )
        async with aclosing(relay.run()) as chunks:
            async for chunk in chunks:
                yield chunk

        self.metrics.timing("chat.timed", (time.time() - start_time) * 1000)
