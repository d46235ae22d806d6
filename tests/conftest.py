"""
Shared pytest fixtures for slide-beacon tests.

Provides:
- Fake advertisement providers that record start/stop calls in order
- A coordinator wired to a real StatusFanout and an inspectable update queue
"""

import queue

import pytest

from slide_beacon.coordinator import BroadcastCoordinator
from slide_beacon.fanout import StatusFanout
from slide_beacon.models import Mode, ProviderError


class FakeProvider:
    """Provider double. Every call is appended to the shared `calls` list."""

    def __init__(self, mode, calls, error=None):
        self.mode = mode
        self.calls = calls
        self.error = error
        self.starts = 0

    async def start(self, payload):
        self.calls.append((self.mode, "start", payload))
        if self.error:
            raise ProviderError(self.error)
        self.starts += 1
        return f"{self.mode.remote_tag}-handle-{self.starts}"

    async def stop(self):
        self.calls.append((self.mode, "stop"))


class FakeWebSocket:
    """Remote client double collecting sent messages."""

    def __init__(self, messages=()):
        self.sent = []
        self._messages = list(messages)

    async def send(self, text):
        self.sent.append(text)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)


def drain(update_queue):
    """Returns every (message_type, data) currently queued."""
    items = []
    while True:
        try:
            items.append(update_queue.get_nowait())
        except queue.Empty:
            return items


def statuses(update_queue):
    return [data for kind, data in drain(update_queue) if kind == "status"]


@pytest.fixture
def calls():
    return []


@pytest.fixture
def update_queue():
    return queue.Queue()


@pytest.fixture
def providers(calls):
    return {
        Mode.SHORT_RANGE: FakeProvider(Mode.SHORT_RANGE, calls),
        Mode.LAN_SERVICE: FakeProvider(Mode.LAN_SERVICE, calls),
    }


@pytest.fixture
def coordinator(providers, update_queue):
    return BroadcastCoordinator(providers, StatusFanout(update_queue))
