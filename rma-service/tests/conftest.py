"""
Shared test doubles
===================

Offline stand-ins for the HTTP session, the OpenAI client and the ticket
store configuration. Nothing here reaches the network.
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Standard libraries
from datetime import datetime, timedelta, timezone       # Deterministic clocks
from types import SimpleNamespace                        # Lightweight SDK response shapes

# Third-party libraries
import pytest             # Pytest framework for isolated and reproducible testing

# Local modules
from config import load_config
from store import TicketStore


# ----------------------------
# HTTP doubles
# ----------------------------
class FakeResponse:
    def __init__(self, status_code=200, payload=None, reason="OK", text=""):
        self.status_code = status_code
        self._payload = payload
        self.reason = reason
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeSession:
    """
    Minimal `requests.Session` replacement.

    `handler(method, url, kwargs)` returns a FakeResponse or raises. Every call
    is recorded in `calls` as (method, url, kwargs).
    """

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self.handler("GET", url, kwargs)

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self.handler("POST", url, kwargs)


# ----------------------------
# OpenAI double
# ----------------------------
class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeOpenAI:
    def __init__(self, content=None, error=None):
        self.chat = SimpleNamespace(completions=FakeCompletions(content, error))


# ----------------------------
# Clocks
# ----------------------------
class TickingClock:
    """Returns a strictly increasing UTC timestamp on every call."""

    def __init__(self, start=datetime(2024, 1, 1, tzinfo=timezone.utc), step=timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self):
        self.current = self.current + self.step
        return self.current


# ----------------------------
# Fixtures
# ----------------------------
@pytest.fixture
def cfg():
    """Parsed settings.toml shipped with the service."""
    return load_config()


@pytest.fixture
def store():
    """Empty in-memory store with a ticking clock."""
    return TicketStore.from_url("sqlite://", clock=TickingClock())
