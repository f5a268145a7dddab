from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, Union


@dataclass(frozen=True)
class SendSuccess:
    response: Any = None


@dataclass(frozen=True)
class SendFailure:
    reason: str


SendResult = Union[SendSuccess, SendFailure]


class Sender(Protocol):
    """Performs the actual outbound call.

    Implementations may return SendFailure or raise; the Dispatcher turns
    exceptions and timeouts into SendFailure.
    """

    async def send(self, destination: str, payload: str | bytes) -> SendResult: ...


# Called with (job, outcome) when a job is deferred instead of enqueued.
DeferredCallback = Callable[[Any, Any], Awaitable[None]]
