from __future__ import annotations

from typing import Any, Callable, Optional, Sequence

import grpc

from core.config import ServerSettings, ServerTlsSettings
from core.exceptions import ConfigurationException, ServerStartException
from core.logging_config import get_logger
from shared.codes import ErrorCode


logger = get_logger(__name__)


class ServerBuilder:
    """Collects everything needed for a grpc.aio server before it is created.

    Builder configurers receive this object and may add interceptors, options,
    services or credentials. Ports are bound separately by ``bind`` so that
    bind failures surface at start time.
    """

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self.handlers: list[grpc.GenericRpcHandler] = []
        self.interceptors: list[grpc.aio.ServerInterceptor] = []
        self.options: dict[str, Any] = {}
        self.credentials: Optional[grpc.ServerCredentials] = None
        self.maximum_concurrent_rpcs: Optional[int] = None
        self.compression: Optional[grpc.Compression] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def add_service(self, handler: grpc.GenericRpcHandler) -> "ServerBuilder":
        self.handlers.append(handler)
        return self

    def intercept(self, *interceptors: grpc.aio.ServerInterceptor) -> "ServerBuilder":
        self.interceptors.extend(interceptors)
        return self

    def option(self, key: str, value: Any) -> "ServerBuilder":
        self.options[key] = value
        return self

    def use_transport_security(self, credentials: grpc.ServerCredentials) -> "ServerBuilder":
        self.credentials = credentials
        return self

    def build(self) -> grpc.aio.Server:
        return grpc.aio.server(
            handlers=tuple(self.handlers),
            interceptors=tuple(self.interceptors),
            options=list(self.options.items()),
            maximum_concurrent_rpcs=self.maximum_concurrent_rpcs,
            compression=self.compression,
        )

    def bind(self, server: grpc.aio.Server) -> int:
        """Attach the listening port. Returns the bound port number."""
        try:
            if self.credentials is not None:
                bound = server.add_secure_port(self.address, self.credentials)
            else:
                bound = server.add_insecure_port(self.address)
        except RuntimeError as exc:
            raise ServerStartException(self.address, str(exc)) from exc
        if not bound:
            raise ServerStartException(self.address, "port could not be bound")
        return bound


ServerBuilderConfigurer = Callable[[ServerBuilder], None]


def chain_configurers(*configurers: Optional[ServerBuilderConfigurer]) -> ServerBuilderConfigurer:
    active = [c for c in configurers if c is not None]

    def _configure(builder: ServerBuilder) -> None:
        for configurer in active:
            configurer(builder)

    return _configure


def _read(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as exc:
        raise ConfigurationException(
            f"Cannot read TLS material from {path}: {exc}",
            code=ErrorCode.TLS_MATERIAL_ERROR,
        ) from exc


def load_server_credentials(tls: ServerTlsSettings) -> grpc.ServerCredentials:
    if not (tls.cert and tls.key):
        raise ConfigurationException(
            "gRPC TLS enabled but cert/key not provided",
            code=ErrorCode.TLS_MATERIAL_ERROR,
        )
    cert_chain = _read(tls.cert)
    private_key = _read(tls.key)
    root_certificates = _read(tls.ca) if tls.ca else None
    return grpc.ssl_server_credentials(
        [(private_key, cert_chain)],
        root_certificates=root_certificates,
        require_client_auth=bool(root_certificates),
    )


def new_server_builder(config: ServerSettings, handlers: Sequence[grpc.GenericRpcHandler] = ()) -> ServerBuilder:
    """Builder preloaded with the settings-derived options and credentials."""
    if not 0 <= config.port <= 65535:
        raise ConfigurationException(f"Invalid port {config.port}", code=ErrorCode.INVALID_PORT)
    builder = ServerBuilder(config.host, config.port)
    builder.option("grpc.max_concurrent_streams", max(1, config.max_concurrent_streams))
    for handler in handlers:
        builder.add_service(handler)
    if config.tls.enabled:
        builder.use_transport_security(load_server_credentials(config.tls))
    return builder
