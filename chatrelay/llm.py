import logging
from typing import AsyncIterator, List, Optional

import anyio
import statsd
from openai import APIError, APIStatusError, AsyncOpenAI

from chatrelay.errors import Cancelled, CapabilityUnavailable, UpstreamError

logger = logging.getLogger(__name__)


def _chunk_text(chunk) -> str:
    # providers may send keep-alive chunks with no choices or an empty delta
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    return getattr(delta, "content", None) or ""


def _completion_text(response) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    return getattr(message, "content", None) or ""


def _upstream_error(exc: APIError) -> UpstreamError:
    if isinstance(exc, APIStatusError):
        return UpstreamError("model provider returned an error", status=exc.status_code, body=exc.response.text)
    return UpstreamError(f"model provider request failed: {exc.message}")


class ChatModelClient:
    """Chat-completion client for any OpenAI-compatible provider."""

    def __init__(
        self,
        metrics: statsd.StatsClient,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        idle_timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.metrics = metrics
        self.model_version = model
        self.idle_timeout = idle_timeout
        if client is None and api_key:
            client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.openai_client = client

    @property
    def available(self) -> bool:
        return self.openai_client is not None

    def _build_messages(self, messages: List[dict], system_instruction: Optional[str]) -> List[dict]:
        if system_instruction is None:
            return list(messages)
        return [{"role": "system", "content": system_instruction}] + list(messages)

    async def stream_completion(
        self,
        messages: List[dict],
        system_instruction: Optional[str] = None,
        cancel: Optional[anyio.Event] = None,
    ) -> AsyncIterator[str]:
        """Yield text fragments as the provider generates them.

        Setting ``cancel`` stops the stream before the next read: the upstream
        connection is closed and Cancelled is raised. Provider failures and
        idle timeouts raise UpstreamError.
        """
        if self.openai_client is None:
            raise CapabilityUnavailable("model API key is not configured")

        try:
            stream = await self.openai_client.chat.completions.create(
                model=self.model_version,
                messages=self._build_messages(messages, system_instruction),
                stream=True,
            )
        except APIError as exc:
            self.metrics.incr("errors.generate_response")
            raise _upstream_error(exc) from exc

        iterator = aiter(stream)
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    raise Cancelled()
                try:
                    with anyio.fail_after(self.idle_timeout):
                        chunk = await anext(iterator)
                except StopAsyncIteration:
                    break
                except TimeoutError as exc:
                    self.metrics.incr("errors.generate_response")
                    raise UpstreamError(f"no data from model provider for {self.idle_timeout}s") from exc
                except APIError as exc:
                    self.metrics.incr("errors.generate_response")
                    raise _upstream_error(exc) from exc

                token = _chunk_text(chunk)
                if token:
                    yield token
            self.metrics.incr("success.generate_response")
        finally:
            # release the upstream connection even when the caller was cancelled
            with anyio.CancelScope(shield=True):
                await stream.close()

    async def complete(self, messages: List[dict], system_instruction: Optional[str] = None) -> str:
        if self.openai_client is None:
            raise CapabilityUnavailable("model API key is not configured")
        try:
            response = await self.openai_client.chat.completions.create(
                model=self.model_version,
                messages=self._build_messages(messages, system_instruction),
            )
        except APIError as exc:
            self.metrics.incr("errors.generate_response")
            raise _upstream_error(exc) from exc

        self.metrics.incr("success.generate_response")
        return _completion_text(response)
