from collections import Counter

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from chatrelay.app import create_app
from chatrelay.errors import Cancelled, CapabilityUnavailable
from chatrelay.events import iter_events
from chatrelay.settings import Settings
from chatrelay.store import SessionStore, create_tables


class FakeMetrics:
    def __init__(self):
        self.counters = Counter()
        self.timings = []

    def incr(self, stat, count=1, rate=1):
        self.counters[stat] += count

    def timing(self, stat, delta, rate=1):
        self.timings.append((stat, delta))


class FakeModel:
    """Scripted stand-in for ChatModelClient.

    ``stream_error`` is raised once ``error_after`` tokens were produced.
    """

    def __init__(self, tokens=("Salom", "! ", "Qalaysiz?"), title="Greeting Chat", stream_error=None,
                 error_after=0, title_error=None, available=True):
        self.tokens = list(tokens)
        self.title = title
        self.stream_error = stream_error
        self.error_after = error_after
        self.title_error = title_error
        self.available = available
        self.stream_calls = []
        self.complete_calls = []
        self.pulled = 0

    async def stream_completion(self, messages, system_instruction=None, cancel=None):
        if not self.available:
            raise CapabilityUnavailable("model API key is not configured")
        self.stream_calls.append(messages)
        for index, token in enumerate(self.tokens):
            if cancel is not None and cancel.is_set():
                raise Cancelled()
            if self.stream_error is not None and index == self.error_after:
                raise self.stream_error
            self.pulled += 1
            yield token
        if self.stream_error is not None and self.error_after >= len(self.tokens):
            raise self.stream_error

    async def complete(self, messages, system_instruction=None):
        self.complete_calls.append((messages, system_instruction))
        if self.title_error is not None:
            raise self.title_error
        return self.title


class FakeOcr:
    def __init__(self, text=None):
        self.text = text
        self.calls = []

    async def extract_text(self, image, filename="image.jpg", media_type="image/jpeg"):
        self.calls.append((image, filename, media_type))
        return self.text


def parse_events(body: str) -> list:
    return [event.json() for event in iter_events([body])]


def event_kinds(payloads: list) -> list:
    kinds = []
    for payload in payloads:
        if payload.get("done"):
            kinds.append("done")
        elif "token" in payload:
            kinds.append("token")
        elif "newTitle" in payload:
            kinds.append("newTitle")
        elif "error" in payload:
            kinds.append("error")
    return kinds


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    create_tables(engine)
    return engine


@pytest.fixture
def store(engine):
    return SessionStore(engine)


@pytest.fixture
def metrics():
    return FakeMetrics()


@pytest.fixture
def model():
    return FakeModel()


@pytest.fixture
def ocr():
    return FakeOcr()


@pytest.fixture
def settings():
    return Settings(history_limit=16, vision_daily_limit=2)


@pytest.fixture
def app(settings, store, model, ocr, metrics):
    return create_app(settings, store=store, model=model, ocr=ocr, metrics=metrics)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
