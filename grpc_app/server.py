from __future__ import annotations

import asyncio
import threading
from enum import Enum
from typing import Iterable, Optional, Sequence, Union

import grpc

from core.config import ServerSettings, settings
from core.exceptions import (
    ConfigurationException,
    ServerStartException,
    ServerStateException,
    validate_settings,
)
from core.logging_config import get_logger
from grpc_app.builder import ServerBuilder, ServerBuilderConfigurer, chain_configurers, new_server_builder
from grpc_app.events import EventPublisher, Listener, ServerInitializedEvent
from grpc_app.health import HealthRegistrar
from grpc_app.interceptors.logging import LoggingInterceptor
from grpc_app.interceptors.request_id import RequestIdInterceptor
from grpc_app.registry import CandidateSource, ServiceDescriptor, ServiceRegistry
from shared.codes import ErrorCode


logger = get_logger(__name__)


class ServerState(str, Enum):
    CREATED = "CREATED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    DRAINING = "DRAINING"
    TERMINATED = "TERMINATED"


_ORDER = {state: index for index, state in enumerate(ServerState)}


class _StateCell:
    """State and server reference, read by the waiter and written by close().

    ``destroy()`` may run on a different thread than the event loop, so every
    access goes through the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = ServerState.CREATED
        self._server: Optional[grpc.aio.Server] = None

    @property
    def state(self) -> ServerState:
        with self._lock:
            return self._state

    @property
    def server(self) -> Optional[grpc.aio.Server]:
        with self._lock:
            return self._server

    def expect(self, *states: ServerState) -> Optional[grpc.aio.Server]:
        with self._lock:
            if self._state not in states:
                raise ServerStateException(self._state.value, "/".join(s.value for s in states))
            return self._server

    def advance(self, target: ServerState, *, expected: ServerState, server: Optional[grpc.aio.Server] = None) -> None:
        with self._lock:
            if self._state is not expected or _ORDER[target] < _ORDER[self._state]:
                raise ServerStateException(self._state.value, target.value)
            self._state = target
            if server is not None:
                self._server = server

    def begin_drain(self) -> tuple[ServerState, Optional[grpc.aio.Server]]:
        """Move to DRAINING unless already draining or terminated."""
        with self._lock:
            previous = self._state
            if previous in (ServerState.DRAINING, ServerState.TERMINATED):
                return previous, None
            self._state = ServerState.DRAINING
            return previous, self._server

    def terminate(self) -> None:
        with self._lock:
            self._state = ServerState.TERMINATED
            self._server = None


class GrpcServerRunner:
    """Builds a grpc.aio server from discovered services and manages its lifecycle.

    States move strictly forward::

        CREATED -> STARTING -> RUNNING -> DRAINING -> TERMINATED

    ``start()`` returns a task that finishes when the server terminates;
    ``close()`` drains for ``shutdown_delay_millis`` and then cancels what is
    left. ``close()`` and ``destroy()`` are idempotent.
    """

    def __init__(
        self,
        config: Optional[ServerSettings],
        services: Union[ServiceRegistry, Sequence[ServiceDescriptor], None],
        *,
        configurer: Optional[ServerBuilderConfigurer] = None,
        publisher: Optional[EventPublisher] = None,
    ) -> None:
        self._config = config
        if isinstance(services, ServiceRegistry):
            services = services.services
        self._services: Optional[tuple[ServiceDescriptor, ...]] = tuple(services) if services is not None else None
        self._configurer = configurer
        self._publisher = publisher or EventPublisher()
        self._cell = _StateCell()
        self._builder: Optional[ServerBuilder] = None
        self._port: Optional[int] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._termination: Optional[asyncio.Task] = None
        self._close_lock = asyncio.Lock()
        self._pending_close: Optional[asyncio.Task] = None

    @property
    def state(self) -> ServerState:
        return self._cell.state

    @property
    def server(self) -> Optional[grpc.aio.Server]:
        return self._cell.server

    @property
    def services(self) -> tuple[ServiceDescriptor, ...]:
        return self._services or ()

    @property
    def port(self) -> Optional[int]:
        """Bound port once started, configured port before."""
        if self._port is not None:
            return self._port
        return self._config.port if self._config is not None else None

    @property
    def address(self) -> str:
        host = self._config.host if self._config is not None else "?"
        return f"{host}:{self.port}"

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    def subscribe(self, listener: Listener) -> None:
        self._publisher.subscribe(listener)

    def build(self) -> grpc.aio.Server:
        """Create the server with every service and builder hook applied."""
        if self._config is None:
            raise ConfigurationException("ServerSettings is required to build a gRPC server")
        if self._services is None:
            raise ConfigurationException("A service discovery result is required to build a gRPC server")
        self._cell.expect(ServerState.CREATED)

        config = validate_settings(self._config)
        builder = new_server_builder(config, [svc.definition() for svc in self._services])
        for svc in self._services:
            logger.info("grpc_service_registered", service=svc.name)
        if self._configurer is not None:
            self._configurer(builder)

        server = builder.build()
        self._builder = builder
        self._cell.advance(ServerState.STARTING, expected=ServerState.CREATED, server=server)
        logger.info(
            "grpc_server_built",
            address=builder.address,
            services=[svc.name for svc in self._services],
            interceptors=len(builder.interceptors),
            tls=builder.credentials is not None,
        )
        return server

    async def start(self) -> asyncio.Task:
        """Start serving. Returns the task that completes on termination.

        Bind or start failures raise ServerStartException and leave the
        runner in STARTING.
        """
        if self.state is ServerState.CREATED:
            self.build()
        server = self._cell.expect(ServerState.STARTING)
        self._loop = asyncio.get_running_loop()

        address = self._builder.address
        logger.info("grpc_server_starting", address=address)
        try:
            self._port = self._builder.bind(server)
            await server.start()
        except ServerStartException as exc:
            logger.error("grpc_server_start_failed", address=address, error=exc.message)
            raise
        except Exception as exc:
            logger.error("grpc_server_start_failed", address=address, error=str(exc))
            raise ServerStartException(address, str(exc)) from exc

        self._cell.advance(ServerState.RUNNING, expected=ServerState.STARTING)
        self._termination = asyncio.create_task(
            server.wait_for_termination(), name=f"grpc-server-{self._port}"
        )
        logger.info("grpc_server_started", address=address, port=self._port, services=len(self.services))
        await self._publisher.publish(ServerInitializedEvent(runner=self, server=server, port=self._port))
        return self._termination

    async def serve(self) -> None:
        """Start and block until the server terminates; cancellation closes it.

        A failure after the server was built, including a failing
        initialized-event listener, closes it before the error propagates.
        """
        try:
            termination = await self.start()
        except ServerStateException:
            raise
        except BaseException:
            if self.state is not ServerState.CREATED:
                await self.close()
            raise
        try:
            await termination
        except asyncio.CancelledError:
            logger.info("grpc_server_serve_cancelled", address=self.address)
            await self.close()
            raise

    async def close(self) -> None:
        """Graceful drain, then forced stop. Always ends in TERMINATED."""
        async with self._close_lock:
            previous, server = self._cell.begin_drain()
            if previous in (ServerState.DRAINING, ServerState.TERMINATED):
                return
            if server is None:
                self._cell.terminate()
                logger.info("grpc_server_stopped", address=self.address, previous_state=previous.value)
                return

            grace = self._config.shutdown_grace_seconds if self._config is not None else None
            logger.info("grpc_server_stopping", address=self.address, grace_seconds=grace)
            try:
                await server.stop(grace)
            except asyncio.CancelledError:
                logger.warning(
                    "grpc_server_drain_interrupted",
                    address=self.address,
                    code=int(ErrorCode.SHUTDOWN_INTERRUPTED),
                )
            except Exception as exc:
                logger.warning("grpc_server_drain_failed", address=self.address, error=str(exc))
            finally:
                try:
                    await server.stop(None)
                except Exception as exc:
                    logger.warning("grpc_server_force_stop_failed", address=self.address, error=str(exc))
                self._cell.terminate()
            logger.info("grpc_server_stopped", address=self.address, previous_state=previous.value)

    def destroy(self) -> None:
        """Synchronous close() for signal handlers, atexit hooks and other threads."""
        if self._cell.state is ServerState.TERMINATED:
            return
        try:
            loop = self._loop
            if loop is None or loop.is_closed():
                previous, _ = self._cell.begin_drain()
                if previous is not ServerState.TERMINATED:
                    self._cell.terminate()
                    logger.info("grpc_server_stopped", address=self.address, previous_state=previous.value)
                return
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                # Cannot block the loop we are running on
                self._pending_close = loop.create_task(self.close())
            elif loop.is_running():
                asyncio.run_coroutine_threadsafe(self.close(), loop).result()
            else:
                loop.run_until_complete(self.close())
        except Exception as exc:
            logger.error("grpc_server_destroy_failed", address=self.address, error=str(exc), exc_info=True)

    async def __aenter__(self) -> "GrpcServerRunner":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def install_default_interceptors(builder: ServerBuilder) -> None:
    builder.intercept(RequestIdInterceptor(), LoggingInterceptor())


def create_runner(
    source: CandidateSource = (),
    config: Optional[ServerSettings] = None,
    *,
    configurer: Optional[ServerBuilderConfigurer] = None,
    listeners: Iterable[Listener] = (),
) -> GrpcServerRunner:
    """Discover services from ``source`` and wire a runner with the default hooks.

    Discovery errors are raised here, before any transport work.
    """
    config = config if config is not None else settings.server
    registry = ServiceRegistry()
    registry.discover(source)

    publisher = EventPublisher()
    hooks: list[Optional[ServerBuilderConfigurer]] = [install_default_interceptors]
    if config.health_enabled:
        registrar = HealthRegistrar()
        hooks.append(registrar.configure)
        publisher.subscribe(registrar.on_server_initialized)
    hooks.append(configurer)
    for listener in listeners:
        publisher.subscribe(listener)

    return GrpcServerRunner(
        config,
        registry,
        configurer=chain_configurers(*hooks),
        publisher=publisher,
    )
