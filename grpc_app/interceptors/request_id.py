from __future__ import annotations

import contextvars
import inspect
import uuid
from typing import Awaitable, Callable, Optional

import grpc


REQUEST_ID_META_KEY = "x-request-id"
_request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("grpc_request_id", default=None)


def get_request_id() -> Optional[str]:
    return _request_id_var.get()


def _incoming_request_id(handler_call_details: grpc.HandlerCallDetails) -> str:
    md = dict(handler_call_details.invocation_metadata or [])
    return md.get(REQUEST_ID_META_KEY) or str(uuid.uuid4())


def _bind(request_id: str, context: grpc.aio.ServicerContext) -> contextvars.Token:
    context.set_trailing_metadata(((REQUEST_ID_META_KEY, request_id),))
    return _request_id_var.set(request_id)


def _wrap_unary_response(behavior, request_id: str):
    async def _call(request, context: grpc.aio.ServicerContext):
        token = _bind(request_id, context)
        try:
            response = behavior(request, context)
            if inspect.isawaitable(response):
                response = await response
            return response
        finally:
            _request_id_var.reset(token)

    return _call


def _wrap_stream_response(behavior, request_id: str):
    """Keep the handler's shape: async generators stay generators, writers stay coroutines."""
    if inspect.isasyncgenfunction(behavior):
        async def _iterate(request, context: grpc.aio.ServicerContext):
            token = _bind(request_id, context)
            try:
                async for response in behavior(request, context):
                    yield response
            finally:
                _request_id_var.reset(token)

        return _iterate
    if inspect.iscoroutinefunction(behavior):
        async def _write(request, context: grpc.aio.ServicerContext):
            token = _bind(request_id, context)
            try:
                return await behavior(request, context)
            finally:
                _request_id_var.reset(token)

        return _write
    return None


class RequestIdInterceptor(grpc.aio.ServerInterceptor):
    """Binds the caller's x-request-id (or a new one) to the handling context.

    The id is echoed back as trailing metadata so the client can correlate.
    Unary-request methods are covered; client-streaming methods and
    synchronous streaming handlers pass through unchanged.
    """

    async def intercept_service(
        self,
        continuation: Callable[[grpc.HandlerCallDetails], Awaitable[grpc.RpcMethodHandler]],
        handler_call_details: grpc.HandlerCallDetails,
    ) -> grpc.RpcMethodHandler:
        handler = await continuation(handler_call_details)
        if handler is None:
            return handler

        request_id = _incoming_request_id(handler_call_details)
        if handler.unary_unary:
            return grpc.unary_unary_rpc_method_handler(
                _wrap_unary_response(handler.unary_unary, request_id),
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )
        if handler.unary_stream:
            wrapped = _wrap_stream_response(handler.unary_stream, request_id)
            if wrapped is not None:
                return grpc.unary_stream_rpc_method_handler(
                    wrapped,
                    request_deserializer=handler.request_deserializer,
                    response_serializer=handler.response_serializer,
                )
        return handler
