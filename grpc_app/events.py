from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

import grpc

from core.logging_config import get_logger

if TYPE_CHECKING:
    from grpc_app.server import GrpcServerRunner


logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ServerInitializedEvent:
    """Published once the transport accepts connections."""

    runner: "GrpcServerRunner"
    server: grpc.aio.Server
    port: int


Listener = Callable[[Any], Union[None, Awaitable[None]]]


class EventPublisher:
    """Delivers lifecycle events to sync or async listeners, in subscription order."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def publish(self, event: Any) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.error(
                    "grpc_event_listener_failed",
                    event=type(event).__name__,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    exc_info=True,
                )
                raise
