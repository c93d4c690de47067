"""Pytest bootstrap configuration.

Services used by the tests are built from generic handlers over raw bytes,
so no protoc step is needed.
"""
import asyncio
import os

os.environ.setdefault("LOG_LEVEL", "WARNING")

import grpc
import pytest

from core.config import ChannelSettings, ServerSettings
from grpc_app.interceptors.request_id import get_request_id


ECHO_SERVICE = "test.Echo"


class EchoService:
    """Bindable service: Say echoes, WhoAmI and WhoAmIStream return the request id,
    Deny aborts, Fail raises and Slow blocks until cancelled.
    """

    def __init__(self, full_name: str = ECHO_SERVICE) -> None:
        self.service_name = full_name
        self.slow_started = asyncio.Event()

    def bind_service(self) -> grpc.GenericRpcHandler:
        async def say(request: bytes, context: grpc.aio.ServicerContext) -> bytes:
            return request

        async def who_am_i(request: bytes, context: grpc.aio.ServicerContext) -> bytes:
            return (get_request_id() or "").encode()

        async def who_am_i_stream(request: bytes, context: grpc.aio.ServicerContext):
            for _ in range(2):
                yield (get_request_id() or "").encode()

        async def deny(request: bytes, context: grpc.aio.ServicerContext) -> bytes:
            await context.abort(grpc.StatusCode.PERMISSION_DENIED, "denied")

        async def fail(request: bytes, context: grpc.aio.ServicerContext) -> bytes:
            raise ValueError("boom")

        async def slow(request: bytes, context: grpc.aio.ServicerContext) -> bytes:
            self.slow_started.set()
            await asyncio.sleep(30)
            return request

        return grpc.method_handlers_generic_handler(
            self.service_name,
            {
                "Say": grpc.unary_unary_rpc_method_handler(say),
                "WhoAmI": grpc.unary_unary_rpc_method_handler(who_am_i),
                "Slow": grpc.unary_unary_rpc_method_handler(slow),
                "WhoAmIStream": grpc.unary_stream_rpc_method_handler(who_am_i_stream),
                "Deny": grpc.unary_unary_rpc_method_handler(deny),
                "Fail": grpc.unary_unary_rpc_method_handler(fail),
            },
        )


class NotAService:
    """Exported by mistake: has no bind_service()."""


@pytest.fixture
def echo_service_cls():
    return EchoService


@pytest.fixture
def not_a_service_cls():
    return NotAService


@pytest.fixture
def server_settings() -> ServerSettings:
    return ServerSettings(host="127.0.0.1", port=0, shutdown_delay_millis=500, health_enabled=False)


@pytest.fixture
def channel_settings() -> ChannelSettings:
    return ChannelSettings(addresses=["127.0.0.1:50051"])
