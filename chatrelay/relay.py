import logging
from contextlib import aclosing
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

import anyio
import statsd
from fastapi.concurrency import run_in_threadpool

from chatrelay.errors import Cancelled, CapabilityUnavailable, StoreUnavailable, UpstreamError
from chatrelay.events import done_event, error_event, title_event, token_event
from chatrelay.llm import ChatModelClient
from chatrelay.models import DEFAULT_TITLE
from chatrelay.store import SessionStore
from chatrelay.titles import TitleGenerator

logger = logging.getLogger(__name__)

UPSTREAM_ERROR_MESSAGE = "The assistant could not answer right now. Please try again."
INTERNAL_ERROR_MESSAGE = "Internal server error occurred."


class RelayState(str, Enum):
    INIT = "init"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class StreamRelay:
    """Forward one model stream to one client as events and persist the reply.

    ``run`` yields event-stream chunks. Tokens are forwarded in the order the
    model produced them and their concatenation is what gets stored. If the
    client goes away the upstream stream is cancelled, nothing more is
    written, and any partial text is still stored. Unless aborted the last
    chunk is always a ``done`` event.
    """

    def __init__(
        self,
        model: ChatModelClient,
        store: SessionStore,
        titles: TitleGenerator,
        metrics: statsd.StatsClient,
        session_id: Optional[int],
        messages: List[dict],
        title_seed: str,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.model = model
        self.store = store
        self.titles = titles
        self.metrics = metrics
        self.session_id = session_id
        self.messages = messages
        self.title_seed = title_seed
        self.is_disconnected = is_disconnected

        self.state = RelayState.INIT
        self.text = ""

    async def _client_gone(self) -> bool:
        if self.is_disconnected is None:
            return False
        return await self.is_disconnected()

    async def run(self) -> AsyncIterator[str]:
        parts: List[str] = []
        cancel = anyio.Event()
        finalized = False
        self.state = RelayState.STREAMING

        try:
            try:
                async with aclosing(self.model.stream_completion(self.messages, cancel=cancel)) as tokens:
                    async for token in tokens:
                        parts.append(token)
                        yield token_event(token)
                        if await self._client_gone():
                            cancel.set()
                self.state = RelayState.COMPLETED
            except Cancelled:
                self.state = RelayState.ABORTED
            except (UpstreamError, CapabilityUnavailable) as exc:
                logger.error("Model stream failed for session_id=%s: %s", self.session_id, exc)
                self.state = RelayState.FAILED
                yield error_event(UPSTREAM_ERROR_MESSAGE)
            except Exception:
                logger.exception("Unexpected relay failure for session_id=%s", self.session_id)
                self.state = RelayState.FAILED
                yield error_event(INTERNAL_ERROR_MESSAGE)

            self.text = "".join(parts)
            self.metrics.incr(f"stream.{self.state.value}")

            if self.state is RelayState.ABORTED:
                finalized = True
                logger.info("Client left session_id=%s after %d chars", self.session_id, len(self.text))
                await self._finalize_aborted()
                return

            finalized = True
            new_title = await self._finalize(self.text)
            if new_title is not None:
                yield title_event(new_title)
            yield done_event(self.session_id, new_title)
        finally:
            if not finalized:
                # the serving task was cancelled or the client closed the stream mid-write
                self.state = RelayState.ABORTED
                self.text = "".join(parts)
                self.metrics.incr("stream.aborted")
                await self._finalize_aborted()

    async def _persist_reply(self, text: str) -> bool:
        if not text or self.session_id is None:
            return False
        try:
            await run_in_threadpool(self.store.append_message, self.session_id, "assistant", text, "text")
            await run_in_threadpool(self.store.touch_updated_at, self.session_id)
        except StoreUnavailable as exc:
            logger.warning("Could not persist reply for session_id=%s: %s", self.session_id, exc)
            return False
        return True

    async def _finalize(self, text: str) -> Optional[str]:
        """Persist the reply and, on the session's first reply, set its title."""
        if not await self._persist_reply(text):
            return None
        return await self._name_session()

    async def _finalize_aborted(self) -> None:
        # nothing is written to the client, and the server may be cancelling this task
        with anyio.CancelScope(shield=True):
            await self._finalize(self.text)

    async def _name_session(self) -> Optional[str]:
        try:
            chat_session = await run_in_threadpool(self.store.get_session, self.session_id)
            if chat_session is None or chat_session.title != DEFAULT_TITLE:
                return None
            title = await self.titles.generate(self.title_seed)
            updated = await run_in_threadpool(self.store.update_title, self.session_id, title)
        except StoreUnavailable as exc:
            logger.warning("Could not set title for session_id=%s: %s", self.session_id, exc)
            return None
        except Exception:
            logger.exception("Title step failed for session_id=%s", self.session_id)
            return None

        return title if updated else None
