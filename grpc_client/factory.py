"""Client channel factory.

``AddressChannelFactory.create_channel`` builds a new ChannelHandle per call:
its own resolver and load-balancing policy, transport options from
``ChannelSettings``, and the global plus per-call interceptors merged without
duplicates. Nothing is cached by target name.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

import grpc

from core.config import ChannelSettings, ChannelTlsSettings, NegotiationType, settings
from core.exceptions import ChannelBuildException, ConfigurationException, validate_settings
from core.logging_config import get_logger
from grpc_client.channel import ChannelHandle
from grpc_client.interceptor_registry import (
    ClientInterceptor,
    GlobalClientInterceptorRegistry,
    merge_interceptors,
)
from grpc_client.load_balancer import LoadBalancerFactory, LoadBalancerPolicy, RoundRobinPolicy
from grpc_client.resolver import NameResolverRegistry
from shared.codes import ErrorCode


logger = get_logger(__name__)


class GrpcChannelFactory(Protocol):
    def create_channel(
        self, name: str, interceptors: Optional[Sequence[ClientInterceptor]] = None
    ) -> ChannelHandle: ...


def build_channel_options(properties: ChannelSettings, policy: LoadBalancerPolicy) -> list[tuple[str, Any]]:
    """Transport options for one channel.

    Only explicitly enabled settings produce options, so anything left off
    keeps the gRPC core default instead of being forced to zero.
    """
    options: list[tuple[str, Any]] = list(policy.channel_options())
    if properties.enable_keep_alive:
        if properties.keep_alive_time > 0:
            options.append(("grpc.keepalive_time_ms", properties.keep_alive_time * 1000))
        if properties.keep_alive_timeout > 0:
            options.append(("grpc.keepalive_timeout_ms", properties.keep_alive_timeout * 1000))
        options.append(("grpc.keepalive_permit_without_calls", int(properties.keep_alive_without_calls)))
    if properties.max_inbound_message_size > 0:
        options.append(("grpc.max_receive_message_length", properties.max_inbound_message_size))
    if properties.full_stream_decompression:
        options.append(("grpc.per_message_decompression", 1))
    if properties.negotiation_type == NegotiationType.TLS and properties.tls.authority:
        options.append(("grpc.ssl_target_name_override", properties.tls.authority))
    return options


def _read(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as exc:
        raise ConfigurationException(
            f"Cannot read TLS material from {path}: {exc}",
            code=ErrorCode.TLS_MATERIAL_ERROR,
        ) from exc


def load_channel_credentials(tls: ChannelTlsSettings) -> grpc.ChannelCredentials:
    """TLS credentials from configured paths; no CA means the system roots."""
    if bool(tls.cert) != bool(tls.key):
        raise ConfigurationException(
            "Client certificate and key must be configured together",
            code=ErrorCode.TLS_MATERIAL_ERROR,
        )
    return grpc.ssl_channel_credentials(
        root_certificates=_read(tls.ca) if tls.ca else None,
        private_key=_read(tls.key) if tls.key else None,
        certificate_chain=_read(tls.cert) if tls.cert else None,
    )


class AddressChannelFactory:
    def __init__(
        self,
        properties: Optional[ChannelSettings] = None,
        load_balancer_factory: LoadBalancerFactory = RoundRobinPolicy,
        interceptor_registry: Optional[GlobalClientInterceptorRegistry] = None,
        resolver_registry: Optional[NameResolverRegistry] = None,
    ) -> None:
        self.properties = properties if properties is not None else settings.channel
        self.load_balancer_factory = load_balancer_factory
        self.interceptor_registry = interceptor_registry or GlobalClientInterceptorRegistry()
        self.resolver_registry = resolver_registry or NameResolverRegistry()

    def create_channel(
        self, name: str, interceptors: Optional[Sequence[ClientInterceptor]] = None
    ) -> ChannelHandle:
        if not name or not name.strip():
            raise ChannelBuildException(repr(name), "target name must not be empty")
        name = name.strip()

        validate_settings(self.properties)
        properties = self.properties

        provider = self.resolver_registry.provider_for(name)
        resolver = provider.new_resolver(name, properties)
        policy = self.load_balancer_factory()

        credentials = None
        if properties.negotiation_type == NegotiationType.TLS:
            credentials = load_channel_credentials(properties.tls)

        effective = merge_interceptors(self.interceptor_registry.get_interceptors(), interceptors)
        handle = ChannelHandle(
            name,
            resolver,
            policy,
            options=build_channel_options(properties, policy),
            credentials=credentials,
            interceptors=effective,
            drain_grace=properties.drain_grace_seconds,
        )
        # Synchronous resolution: pushes the address set to the policy, which opens the transport
        resolver.start(policy.handle_resolved_addresses)

        logger.info(
            "grpc_channel_created",
            name=name,
            target=handle.target,
            addresses=list(handle.addresses.addresses) if handle.addresses else [],
            policy=policy.name,
            negotiation=NegotiationType(properties.negotiation_type).value,
            interceptors=len(effective),
        )
        return handle
