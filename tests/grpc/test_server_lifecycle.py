import asyncio
import socket
import time

import grpc
import pytest
from grpc_health.v1 import health_pb2, health_pb2_grpc

from core.config import ServerSettings
from core.exceptions import ConfigurationException, ServerStartException, ServerStateException
from grpc_app.registry import ServiceRegistry
from grpc_app.server import GrpcServerRunner, ServerState, create_runner


@pytest.mark.asyncio
async def test_start_with_zero_services_then_close_within_drain_deadline(server_settings):
    runner = create_runner((), server_settings)
    assert runner.state is ServerState.CREATED

    termination = await runner.start()
    assert runner.state is ServerState.RUNNING
    assert runner.services == ()
    assert runner.port > 0

    started = time.monotonic()
    await runner.close()
    assert runner.state is ServerState.TERMINATED
    assert time.monotonic() - started < 5
    await asyncio.wait_for(termination, timeout=5)


@pytest.mark.asyncio
async def test_close_is_idempotent(server_settings):
    runner = create_runner((), server_settings)
    await runner.start()

    await runner.close()
    first = (runner.state, runner.server)
    await runner.close()
    await runner.close()
    runner.destroy()

    assert (runner.state, runner.server) == first == (ServerState.TERMINATED, None)


@pytest.mark.asyncio
async def test_build_moves_to_starting_once(server_settings):
    runner = create_runner((), server_settings)
    server = runner.build()

    assert isinstance(server, grpc.aio.Server)
    assert runner.state is ServerState.STARTING
    with pytest.raises(ServerStateException):
        runner.build()
    await runner.close()


def test_build_requires_config_and_discovery_result(server_settings):
    with pytest.raises(ConfigurationException):
        GrpcServerRunner(None, ServiceRegistry()).build()
    with pytest.raises(ConfigurationException):
        GrpcServerRunner(server_settings, None).build()


def test_build_rejects_invalid_port():
    config = ServerSettings.model_construct(host="127.0.0.1", port=70000)
    runner = GrpcServerRunner(config, ServiceRegistry())

    with pytest.raises(ConfigurationException) as ei:
        runner.build()
    assert any(err.startswith("port") for err in ei.value.errors)
    assert runner.state is ServerState.CREATED


@pytest.mark.asyncio
async def test_start_failure_leaves_runner_starting(server_settings):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    taken = sock.getsockname()[1]
    try:
        config = server_settings.model_copy(update={"port": taken})
        runner = create_runner((), config, configurer=lambda b: b.option("grpc.so_reuseport", 0))

        with pytest.raises(ServerStartException):
            await runner.start()
        assert runner.state is ServerState.STARTING

        await runner.close()
        assert runner.state is ServerState.TERMINATED
    finally:
        sock.close()


@pytest.mark.asyncio
async def test_initialized_event_is_published_after_start(server_settings):
    seen = []

    def on_initialized(event):
        seen.append((event.runner.state, event.port, event.server is event.runner.server))

    runner = create_runner((), server_settings, listeners=[on_initialized])
    await runner.start()
    try:
        assert seen == [(ServerState.RUNNING, runner.port, True)]
    finally:
        await runner.close()


@pytest.mark.asyncio
async def test_registered_service_serves_calls(server_settings, echo_service_cls):
    runner = create_runner({"echo": echo_service_cls()}, server_settings)
    await runner.start()
    try:
        async with grpc.aio.insecure_channel(f"127.0.0.1:{runner.port}") as channel:
            call = channel.unary_unary("/test.Echo/Say")(b"ping", metadata=(("x-request-id", "req-1"),))
            assert await call == b"ping"
            trailing = await call.trailing_metadata()
            assert ("x-request-id", "req-1") in list(trailing)
    finally:
        await runner.close()


@pytest.mark.asyncio
async def test_close_cancels_inflight_calls_after_deadline(server_settings, echo_service_cls):
    config = server_settings.model_copy(update={"shutdown_delay_millis": 200})
    service = echo_service_cls()
    runner = create_runner([service], config)
    await runner.start()

    async with grpc.aio.insecure_channel(f"127.0.0.1:{runner.port}") as channel:
        pending = asyncio.ensure_future(channel.unary_unary("/test.Echo/Slow")(b"x"))
        await asyncio.wait_for(service.slow_started.wait(), timeout=5)

        started = time.monotonic()
        await runner.close()
        assert time.monotonic() - started < 5
        assert runner.state is ServerState.TERMINATED

        with pytest.raises(grpc.aio.AioRpcError):
            await asyncio.wait_for(pending, timeout=5)


@pytest.mark.asyncio
async def test_cancelling_serve_closes_the_server(server_settings):
    runner = create_runner((), server_settings)
    serving = asyncio.ensure_future(runner.serve())
    for _ in range(500):
        if runner.state is ServerState.RUNNING:
            break
        await asyncio.sleep(0.01)
    assert runner.state is ServerState.RUNNING

    serving.cancel()
    with pytest.raises(asyncio.CancelledError):
        await serving
    assert runner.state is ServerState.TERMINATED


@pytest.mark.asyncio
async def test_destroy_from_another_thread(server_settings):
    runner = create_runner((), server_settings)
    await runner.start()

    await asyncio.to_thread(runner.destroy)

    assert runner.state is ServerState.TERMINATED


def test_destroy_before_start_terminates(server_settings):
    runner = create_runner((), server_settings)
    runner.destroy()
    runner.destroy()
    assert runner.state is ServerState.TERMINATED


@pytest.mark.asyncio
async def test_start_after_termination_is_rejected(server_settings):
    runner = create_runner((), server_settings)
    await runner.close()
    with pytest.raises(ServerStateException):
        await runner.start()


@pytest.mark.asyncio
async def test_health_reports_serving_for_bound_services(server_settings, echo_service_cls):
    config = server_settings.model_copy(update={"health_enabled": True})
    runner = create_runner({"echo": echo_service_cls()}, config)
    await runner.start()
    try:
        async with grpc.aio.insecure_channel(f"127.0.0.1:{runner.port}") as channel:
            stub = health_pb2_grpc.HealthStub(channel)
            overall = await stub.Check(health_pb2.HealthCheckRequest(service=""))
            echo = await stub.Check(health_pb2.HealthCheckRequest(service="test.Echo"))
        assert overall.status == health_pb2.HealthCheckResponse.SERVING
        assert echo.status == health_pb2.HealthCheckResponse.SERVING
        # The health service itself is not a discovered service
        assert [svc.name for svc in runner.services] == ["echo"]
    finally:
        await runner.close()


@pytest.mark.asyncio
async def test_interrupted_drain_still_terminates(server_settings, echo_service_cls):
    config = server_settings.model_copy(update={"shutdown_delay_millis": 10_000})
    service = echo_service_cls()
    runner = create_runner([service], config)
    await runner.start()

    async with grpc.aio.insecure_channel(f"127.0.0.1:{runner.port}") as channel:
        pending = asyncio.ensure_future(channel.unary_unary("/test.Echo/Slow")(b"x"))
        await asyncio.wait_for(service.slow_started.wait(), timeout=5)

        closing = asyncio.ensure_future(runner.close())
        await asyncio.sleep(0.1)
        assert runner.state is ServerState.DRAINING
        closing.cancel()
        await asyncio.wait_for(closing, timeout=5)

        assert runner.state is ServerState.TERMINATED
        with pytest.raises(grpc.aio.AioRpcError):
            await asyncio.wait_for(pending, timeout=5)


@pytest.mark.asyncio
async def test_serve_closes_server_when_listener_fails(server_settings):
    def failing_listener(event):
        raise RuntimeError("listener exploded")

    runner = create_runner((), server_settings, listeners=[failing_listener])

    with pytest.raises(RuntimeError, match="listener exploded"):
        await runner.serve()
    assert runner.state is ServerState.TERMINATED
    assert runner.server is None


@pytest.mark.asyncio
async def test_serve_does_not_close_a_server_started_elsewhere(server_settings):
    runner = create_runner((), server_settings)
    await runner.start()
    try:
        with pytest.raises(ServerStateException):
            await runner.serve()
        assert runner.state is ServerState.RUNNING
    finally:
        await runner.close()
