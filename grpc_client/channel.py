from __future__ import annotations

import asyncio
from typing import Any, Optional, Sequence

import grpc

from core.exceptions import ChannelBuildException
from core.logging_config import get_logger
from grpc_client.interceptor_registry import ClientInterceptor
from grpc_client.load_balancer import LoadBalancerPolicy
from grpc_client.resolver import AddressSet, NameResolver


logger = get_logger(__name__)


class _HandleMultiCallable:
    """Multicallable bound to a ChannelHandle rather than to one transport.

    The transport is looked up on every call, so stubs created before a
    retarget send their next call over the new transport.
    """

    def __init__(self, handle: "ChannelHandle", kind: str, args: tuple, kwargs: dict) -> None:
        self._handle = handle
        self._kind = kind
        self._args = args
        self._kwargs = kwargs
        self._channel: Optional[grpc.aio.Channel] = None
        self._callable: Any = None

    def _current(self):
        channel = self._handle._require()
        if channel is not self._channel:
            self._callable = getattr(channel, self._kind)(*self._args, **self._kwargs)
            self._channel = channel
        return self._callable

    def __call__(self, *args, **kwargs):
        return self._current()(*args, **kwargs)


class ChannelHandle(grpc.aio.Channel):
    """A client channel bound to one logical target.

    Wraps a grpc.aio channel built from the policy's current address set.
    When the resolver pushes new membership, a new transport is opened and
    the old one is retired: calls already running on it get ``drain_grace``
    seconds to finish before it is closed. Multicallables and stubs taken
    from the handle follow the new transport.
    """

    def __init__(
        self,
        name: str,
        resolver: NameResolver,
        policy: LoadBalancerPolicy,
        *,
        options: Sequence[tuple[str, Any]] = (),
        credentials: Optional[grpc.ChannelCredentials] = None,
        interceptors: Sequence[ClientInterceptor] = (),
        drain_grace: Optional[float] = None,
    ) -> None:
        self.name = name
        self.resolver = resolver
        self.policy = policy
        self.options = tuple(options)
        self.interceptors = tuple(interceptors)
        self.drain_grace = drain_grace
        self._credentials = credentials
        self._channel: Optional[grpc.aio.Channel] = None
        self._target: Optional[str] = None
        self._retired: list[grpc.aio.Channel] = []
        self._draining: set[asyncio.Task] = set()
        self._closed = False
        policy.add_listener(self._on_addresses)

    @property
    def target(self) -> Optional[str]:
        """The gRPC core target the current transport was built for."""
        return self._target

    @property
    def addresses(self) -> Optional[AddressSet]:
        return self.policy.addresses

    @property
    def secure(self) -> bool:
        return self._credentials is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def _open(self, target: str, authority: Optional[str]) -> grpc.aio.Channel:
        options = list(self.options)
        if authority and not any(key == "grpc.default_authority" for key, _ in options):
            options.append(("grpc.default_authority", authority))
        interceptors = list(self.interceptors) or None
        try:
            if self._credentials is not None:
                return grpc.aio.secure_channel(target, self._credentials, options=options, interceptors=interceptors)
            return grpc.aio.insecure_channel(target, options=options, interceptors=interceptors)
        except Exception as exc:
            raise ChannelBuildException(self.name, str(exc)) from exc

    def _on_addresses(self, address_set: AddressSet) -> None:
        target = address_set.to_grpc_target()
        if target == self._target or self._closed:
            return
        channel = self._open(target, address_set.authority)
        if self._channel is not None:
            self._retired.append(self._channel)
            logger.info("grpc_channel_retargeted", name=self.name, previous=self._target, target=target)
        self._channel, self._target = channel, target

    def _require(self) -> grpc.aio.Channel:
        if self._closed or self._channel is None:
            raise grpc.aio.UsageError(f"Channel '{self.name}' is closed")
        return self._channel

    def _drain_retired(self) -> None:
        while self._retired:
            task = asyncio.ensure_future(self._retired.pop(0).close(self.drain_grace))
            self._draining.add(task)
            task.add_done_callback(self._draining.discard)

    async def refresh(self) -> bool:
        """Re-resolve the target; returns True when membership changed.

        The previous transport is closed in the background after the drain
        grace, so this does not wait for in-flight calls.
        """
        changed = self.resolver.refresh()
        self._drain_retired()
        return changed

    async def close(self, grace: Optional[float] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self.resolver.shutdown()
        self._drain_retired()
        if self._draining:
            await asyncio.gather(*self._draining, return_exceptions=True)
        if self._channel is not None:
            await self._channel.close(grace)
        logger.debug("grpc_channel_closed", name=self.name, target=self._target)

    async def __aenter__(self) -> "ChannelHandle":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close(None)

    def get_state(self, try_to_connect: bool = False) -> grpc.ChannelConnectivity:
        return self._require().get_state(try_to_connect)

    async def wait_for_state_change(self, last_observed_state: grpc.ChannelConnectivity) -> None:
        await self._require().wait_for_state_change(last_observed_state)

    async def channel_ready(self) -> None:
        await self._require().channel_ready()

    def unary_unary(self, *args, **kwargs):
        self._require()
        return _HandleMultiCallable(self, "unary_unary", args, kwargs)

    def unary_stream(self, *args, **kwargs):
        self._require()
        return _HandleMultiCallable(self, "unary_stream", args, kwargs)

    def stream_unary(self, *args, **kwargs):
        self._require()
        return _HandleMultiCallable(self, "stream_unary", args, kwargs)

    def stream_stream(self, *args, **kwargs):
        self._require()
        return _HandleMultiCallable(self, "stream_stream", args, kwargs)

    def __repr__(self) -> str:
        return f"ChannelHandle(name={self.name!r}, target={self._target!r}, policy={self.policy.name!r})"
