from __future__ import annotations

import threading
from typing import Iterable, Optional

import grpc

from core.logging_config import get_logger


logger = get_logger(__name__)


ClientInterceptor = grpc.aio.ClientInterceptor


class GlobalClientInterceptorRegistry:
    """Interceptors applied to every channel a factory builds.

    Passed explicitly to the factory; give independent factories their own
    registry. Registration does not deduplicate, merging does.
    """

    def __init__(self, interceptors: Optional[Iterable[ClientInterceptor]] = None) -> None:
        self._lock = threading.Lock()
        self._interceptors: list[ClientInterceptor] = list(interceptors or [])

    def register(self, interceptor: ClientInterceptor) -> ClientInterceptor:
        with self._lock:
            self._interceptors.append(interceptor)
        logger.debug("grpc_client_interceptor_registered", interceptor=type(interceptor).__name__)
        return interceptor

    def get_interceptors(self) -> list[ClientInterceptor]:
        with self._lock:
            return list(self._interceptors)

    def __len__(self) -> int:
        with self._lock:
            return len(self._interceptors)


def merge_interceptors(
    global_interceptors: Optional[Iterable[ClientInterceptor]],
    local_interceptors: Optional[Iterable[ClientInterceptor]],
) -> list[ClientInterceptor]:
    """Global first, then local; an instance seen twice keeps its first position."""
    merged: list[ClientInterceptor] = []
    seen: set[int] = set()
    for interceptor in [*(global_interceptors or ()), *(local_interceptors or ())]:
        if id(interceptor) in seen:
            continue
        seen.add(id(interceptor))
        merged.append(interceptor)
    return merged
