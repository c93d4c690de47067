from __future__ import annotations

import time

import grpc

from core.logging_config import get_logger


logger = get_logger(__name__)


def _method_name(method) -> str:
    return method.decode() if isinstance(method, bytes) else str(method)


class LoggingClientInterceptor(grpc.aio.UnaryUnaryClientInterceptor):
    """Logs each outbound unary call with its status code and elapsed time."""

    async def intercept_unary_unary(self, continuation, client_call_details, request):
        method = _method_name(client_call_details.method)
        start = time.perf_counter()
        call = await continuation(client_call_details, request)
        code = await call.code()
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        if code == grpc.StatusCode.OK:
            logger.info("grpc_client_call_done", method=method, elapsed_ms=elapsed_ms)
        else:
            logger.warning(
                "grpc_client_call_failed",
                method=method,
                status=code.name,
                details=await call.details(),
                elapsed_ms=elapsed_ms,
            )
        return call
