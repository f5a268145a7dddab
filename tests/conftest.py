"""
Pytest configuration and fixtures for dispatch-core.

Provides a hand-driven clock, an in-memory store and a scriptable sender
so the time rules and failure paths are tested without sleeping or
network access.
"""

import asyncio
import sys

import pytest

from dispatch_core import (
    InMemoryStore,
    ManualClock,
    PayloadBuilder,
    SendFailure,
    SendSuccess,
)

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class ScriptedSender:
    """Sender that records calls and fails for selected destinations.

    Attributes:
        failing: destinations answered with SendFailure
        raising: destinations whose send raises RuntimeError
        delay: seconds to sleep inside every send
    """

    def __init__(self, delay: float = 0.0):
        self.calls: list[tuple[str, str]] = []
        self.failing: set[str] = set()
        self.raising: set[str] = set()
        self.delay = delay

    async def send(self, destination, payload):
        self.calls.append((destination, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        if destination in self.raising:
            raise RuntimeError("connection reset")
        if destination in self.failing:
            return SendFailure("HTTP 503")
        return SendSuccess({"status": 200})

    def calls_for(self, destination):
        return [p for d, p in self.calls if d == destination]


@pytest.fixture
def clock():
    return ManualClock(1_000_000.0)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def sender():
    return ScriptedSender()


@pytest.fixture
def payloads():
    return PayloadBuilder(
        {
            "order.created": '{"event": "order.created", "order": "{{order_id}}"}',
            "plain": "hello {{name}}",
        }
    )


@pytest.fixture
def make_sender():
    """Factory for extra senders (e.g. a slow one)."""
    return ScriptedSender
