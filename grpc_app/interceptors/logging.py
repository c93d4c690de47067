from __future__ import annotations

import inspect
import time
from typing import Awaitable, Callable

import grpc

from core.logging_config import get_logger
from grpc_app.interceptors.request_id import get_request_id


logger = get_logger(__name__)


def _status_name(context: grpc.aio.ServicerContext, default: grpc.StatusCode) -> str:
    # aio contexts report the raw integer status set by abort()/set_code()
    code = context.code()
    if isinstance(code, grpc.StatusCode):
        return code.name
    if isinstance(code, int):
        for status in grpc.StatusCode:
            if status.value[0] == code:
                return status.name
    return default.name


class LoggingInterceptor(grpc.aio.ServerInterceptor):
    """Access log for unary-unary RPCs with the final status code and elapsed time.

    Aborted calls are logged at warning level with the status the handler
    chose; anything else raised by a handler is logged as UNKNOWN with its
    traceback.
    """

    async def intercept_service(
        self,
        continuation: Callable[[grpc.HandlerCallDetails], Awaitable[grpc.RpcMethodHandler]],
        handler_call_details: grpc.HandlerCallDetails,
    ) -> grpc.RpcMethodHandler:
        handler = await continuation(handler_call_details)
        if handler is None or not handler.unary_unary:
            return handler

        method = handler_call_details.method
        behavior = handler.unary_unary

        async def _unary_unary(request, context: grpc.aio.ServicerContext):
            start = time.perf_counter()
            status = grpc.StatusCode.OK.name
            try:
                response = behavior(request, context)
                if inspect.isawaitable(response):
                    response = await response
                status = _status_name(context, grpc.StatusCode.OK)
                return response
            except (grpc.RpcError, grpc.aio.AbortError):
                status = _status_name(context, grpc.StatusCode.UNKNOWN)
                raise
            except Exception as exc:
                status = grpc.StatusCode.UNKNOWN.name
                logger.error(
                    "grpc_unhandled_error",
                    method=method,
                    error=str(exc),
                    exc_info=True,
                    request_id=get_request_id(),
                )
                raise
            finally:
                elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
                log = logger.info if status == grpc.StatusCode.OK.name else logger.warning
                log(
                    "grpc_request_done",
                    method=method,
                    status=status,
                    peer=context.peer(),
                    elapsed_ms=elapsed_ms,
                    request_id=get_request_id(),
                )

        return grpc.unary_unary_rpc_method_handler(
            _unary_unary,
            request_deserializer=handler.request_deserializer,
            response_serializer=handler.response_serializer,
        )
