from __future__ import annotations

import uuid

import grpc

from grpc_app.interceptors.request_id import REQUEST_ID_META_KEY, get_request_id


class RequestIdClientInterceptor(grpc.aio.UnaryUnaryClientInterceptor):
    """Propagates the current x-request-id downstream, or starts a new one."""

    async def intercept_unary_unary(self, continuation, client_call_details, request):
        metadata = list(client_call_details.metadata or ())
        if not any(key == REQUEST_ID_META_KEY for key, _ in metadata):
            metadata.append((REQUEST_ID_META_KEY, get_request_id() or str(uuid.uuid4())))
            client_call_details = client_call_details._replace(metadata=grpc.aio.Metadata(*metadata))
        return await continuation(client_call_details, request)
