"""Name resolution for ``address://host1:port1,host2:port2`` targets.

The entries are the final backend list. Host names among several entries
are looked up once when the transport is built and never re-resolved.
A target without entries (``address://`` or a bare logical name) resolves
to ``ChannelSettings.addresses``.

Duplicate entries are dropped, keeping the first occurrence, so
``address://h1:1,h2:2,h1:1`` resolves to ``(h1:1, h2:2)``.
"""
from __future__ import annotations

import abc
import ipaddress
import socket
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from core.config import ChannelSettings
from core.exceptions import ConfigurationException
from core.logging_config import get_logger
from shared.codes import ErrorCode


logger = get_logger(__name__)

ADDRESS_SCHEME = "address"

AddressListener = Callable[["AddressSet"], None]


@dataclass(frozen=True, slots=True)
class AddressSet:
    target: str
    addresses: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.addresses)

    @property
    def authority(self) -> Optional[str]:
        """First host name entry, sent as ``:authority`` once names are rendered as IPs."""
        if len(self.addresses) < 2:
            return None
        for entry in self.addresses:
            if _family(split_host_port(entry)[0]) == "name":
                return entry
        return None

    def to_grpc_target(self) -> str:
        """Render as a gRPC core target string.

        A single host name maps to ``dns:///``. When there are several
        entries, host names are looked up once here and the results joined
        with the IP literals into an ``ipv4:`` or ``ipv6:`` list; the list is
        not re-resolved afterwards. IPv4 mixed with IPv6 cannot be expressed
        as one target.
        """
        if len(self.addresses) == 1 and _family(split_host_port(self.addresses[0])[0]) == "name":
            return "dns:///" + self.addresses[0]

        literals: list[str] = []
        for entry in self.addresses:
            host, port = split_host_port(entry)
            if _family(host) == "name":
                entry = lookup_address(host, port)
            if entry not in literals:
                literals.append(entry)

        families = {_family(split_host_port(entry)[0]) for entry in literals}
        if families == {"ipv4"}:
            return "ipv4:" + ",".join(literals)
        if families == {"ipv6"}:
            return "ipv6:" + ",".join(literals)
        raise ConfigurationException(
            f"Cannot route '{self.target}': IPv4 and IPv6 entries cannot be mixed, got {', '.join(literals)}",
            code=ErrorCode.INVALID_TARGET,
        )


def lookup_address(host: str, port: int) -> str:
    """Resolve a host name to one ``ip:port`` entry, preferring IPv4."""
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError as exc:
        raise ConfigurationException(
            f"Cannot resolve host '{host}': {exc}",
            code=ErrorCode.INVALID_TARGET,
        ) from exc
    for family in (socket.AF_INET, socket.AF_INET6):
        for info_family, _, _, _, sockaddr in infos:
            if info_family == family:
                ip = sockaddr[0]
                return f"{ip}:{port}" if family == socket.AF_INET else f"[{ip}]:{port}"
    raise ConfigurationException(f"No IP address found for host '{host}'", code=ErrorCode.INVALID_TARGET)


def _family(host: str) -> str:
    try:
        ip = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return "name"
    return "ipv6" if ip.version == 6 else "ipv4"


def split_host_port(entry: str) -> tuple[str, int]:
    entry = entry.strip()
    if entry.startswith("["):
        host, sep, rest = entry.partition("]")
        host = host + "]"
        if not rest.startswith(":"):
            raise ValueError(f"missing port in '{entry}'")
        port_text = rest[1:]
    else:
        host, sep, port_text = entry.rpartition(":")
        if not sep:
            raise ValueError(f"missing port in '{entry}'")
        if ":" in host:
            raise ValueError(f"IPv6 host must be bracketed in '{entry}'")
    if not host or host == "[]":
        raise ValueError(f"missing host in '{entry}'")
    if not port_text.isdigit() or not 0 < int(port_text) <= 65535:
        raise ValueError(f"invalid port in '{entry}'")
    return host, int(port_text)


def parse_target(target: str) -> tuple[Optional[str], str]:
    """Split ``scheme://rest``. Targets without ``://`` have no scheme."""
    scheme, sep, rest = target.partition("://")
    if not sep:
        return None, target
    return scheme.lower(), rest


def parse_entries(target: str, entries: Sequence[str]) -> AddressSet:
    addresses: list[str] = []
    errors: list[str] = []
    for raw in entries:
        entry = raw.strip()
        if not entry:
            continue
        try:
            split_host_port(entry)
        except ValueError as exc:
            errors.append(str(exc))
            continue
        if entry not in addresses:
            addresses.append(entry)
    if errors:
        raise ConfigurationException(
            f"Invalid addresses for '{target}': " + "; ".join(errors),
            code=ErrorCode.INVALID_TARGET,
            errors=errors,
        )
    if not addresses:
        raise ConfigurationException(f"No addresses configured for '{target}'", code=ErrorCode.NO_ADDRESSES)
    return AddressSet(target=target, addresses=tuple(addresses))


class NameResolver(abc.ABC):
    @abc.abstractmethod
    def start(self, listener: AddressListener) -> AddressSet: ...

    @abc.abstractmethod
    def refresh(self) -> bool: ...

    @abc.abstractmethod
    def shutdown(self) -> None: ...


class AddressNameResolver(NameResolver):
    """Resolves from the target's own entries or from configured addresses."""

    def __init__(self, target: str, properties: ChannelSettings) -> None:
        self.target = target
        self._properties = properties
        self._listener: Optional[AddressListener] = None
        self._current: Optional[AddressSet] = None

    @property
    def current(self) -> Optional[AddressSet]:
        return self._current

    def resolve(self) -> AddressSet:
        _, rest = parse_target(self.target)
        rest = rest.strip("/")
        entries = rest.split(",") if rest and ":" in rest else list(self._properties.addresses)
        return parse_entries(self.target, entries)

    def start(self, listener: AddressListener) -> AddressSet:
        if self._listener is not None:
            raise RuntimeError(f"Resolver for '{self.target}' already started")
        self._listener = listener
        self._current = self.resolve()
        logger.debug("grpc_resolver_started", target=self.target, addresses=list(self._current.addresses))
        listener(self._current)
        return self._current

    def refresh(self) -> bool:
        """Re-resolve and push the new set only when membership changed."""
        if self._listener is None:
            return False
        resolved = self.resolve()
        if resolved == self._current:
            return False
        logger.info(
            "grpc_resolver_updated",
            target=self.target,
            previous=list(self._current.addresses) if self._current else [],
            addresses=list(resolved.addresses),
        )
        self._current = resolved
        self._listener(resolved)
        return True

    def shutdown(self) -> None:
        self._listener = None


class NameResolverProvider(abc.ABC):
    scheme: str

    def is_available(self) -> bool:
        return True

    def priority(self) -> int:
        """0-10; the highest available provider wins for a scheme."""
        return 5

    @abc.abstractmethod
    def new_resolver(self, target: str, properties: ChannelSettings) -> NameResolver: ...


class AddressResolverProvider(NameResolverProvider):
    scheme = ADDRESS_SCHEME

    def is_available(self) -> bool:
        return True

    def priority(self) -> int:
        return 5

    def new_resolver(self, target: str, properties: ChannelSettings) -> NameResolver:
        return AddressNameResolver(target, properties)


class NameResolverRegistry:
    def __init__(self, providers: Optional[Sequence[NameResolverProvider]] = None) -> None:
        self._providers: list[NameResolverProvider] = list(providers) if providers is not None else [AddressResolverProvider()]

    def register(self, provider: NameResolverProvider) -> None:
        self._providers.append(provider)

    def _available(self) -> list[NameResolverProvider]:
        # sorted() is stable: on equal priority the earlier registration wins
        return sorted(
            (p for p in self._providers if p.is_available()),
            key=lambda p: p.priority(),
            reverse=True,
        )

    def default_scheme(self) -> str:
        available = self._available()
        return available[0].scheme if available else ADDRESS_SCHEME

    def provider_for(self, target: str) -> NameResolverProvider:
        scheme, _ = parse_target(target)
        scheme = scheme or self.default_scheme()
        for provider in self._available():
            if provider.scheme == scheme:
                return provider
        raise ConfigurationException(
            f"No name resolver available for scheme '{scheme}' (target '{target}')",
            code=ErrorCode.UNKNOWN_SCHEME,
        )
