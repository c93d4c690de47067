"""Service discovery and binding.

Candidates come from an explicit source (a mapping, an iterable, a provider
function or an entry point group). A candidate is bindable when it exposes
``bind_service()`` returning a ``grpc.GenericRpcHandler``.
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Any, Callable, Iterable, Iterator, Mapping, Protocol, Union, runtime_checkable

import grpc

from core.exceptions import ConfigurationException, DiscoveryException
from core.logging_config import get_logger


logger = get_logger(__name__)


@runtime_checkable
class BindableService(Protocol):
    def bind_service(self) -> grpc.GenericRpcHandler: ...


CandidateSource = Union[
    Mapping[str, Any],
    Iterable[Any],
    Callable[[], Union[Mapping[str, Any], Iterable[Any]]],
]


@dataclass(frozen=True, slots=True)
class ServiceDescriptor:
    name: str
    service: BindableService

    def definition(self) -> grpc.GenericRpcHandler:
        return self.service.bind_service()

    @property
    def service_name(self) -> str:
        """Fully-qualified gRPC service name, falling back to the registry name."""
        handler = self.definition()
        getter = getattr(handler, "service_name", None)
        if callable(getter):
            name = getter()
            if name:
                return name
        return self.name


def is_bindable(candidate: Any) -> bool:
    return callable(getattr(candidate, "bind_service", None))


def _candidate_name(candidate: Any) -> str:
    name = getattr(candidate, "service_name", None)
    if isinstance(name, str) and name:
        return name
    return type(candidate).__name__


def _iter_candidates(source: CandidateSource) -> Iterator[tuple[str, Any]]:
    if callable(source) and not isinstance(source, Mapping) and not is_bindable(source):
        source = source()
    if isinstance(source, Mapping):
        yield from source.items()
        return
    for candidate in source:
        yield _candidate_name(candidate), candidate


class ServiceRegistry:
    """Holds the services bound to one server."""

    def __init__(self) -> None:
        self._services: dict[str, ServiceDescriptor] = {}

    def discover(self, source: CandidateSource) -> list[ServiceDescriptor]:
        """Validate every candidate and bind the valid ones.

        Fails atomically: if any candidate is not bindable or any name is
        repeated, nothing is registered and a single DiscoveryException lists
        every offending name.
        """
        invalid: list[str] = []
        duplicates: list[str] = []
        found: dict[str, ServiceDescriptor] = {}

        for name, candidate in _iter_candidates(source):
            if not is_bindable(candidate):
                invalid.append(name)
                continue
            if name in found or name in self._services:
                if name not in duplicates:
                    duplicates.append(name)
                continue
            found[name] = ServiceDescriptor(name=name, service=candidate)

        if invalid or duplicates:
            logger.error("grpc_discovery_failed", invalid=invalid, duplicates=duplicates)
            raise DiscoveryException(invalid=invalid, duplicates=duplicates)

        self._services.update(found)
        for name in found:
            logger.info("grpc_service_discovered", service=name)
        return list(found.values())

    @property
    def services(self) -> tuple[ServiceDescriptor, ...]:
        return tuple(self._services.values())

    def names(self) -> list[str]:
        return list(self._services)

    def get(self, name: str) -> ServiceDescriptor | None:
        return self._services.get(name)

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, name: object) -> bool:
        return name in self._services


class _HandlerCapture:
    """Stands in for a server so generated add_*_to_server functions can run."""

    def __init__(self) -> None:
        self.handlers: list[grpc.GenericRpcHandler] = []

    def add_generic_rpc_handlers(self, generic_rpc_handlers) -> None:
        self.handlers.extend(generic_rpc_handlers)

    def add_registered_method_handlers(self, service_name, method_handlers) -> None:
        # Same methods as the generic handler registered alongside it
        return None


class ServicerBinding:
    """Adapts a protoc-generated servicer into a BindableService.

    Example::

        registry.discover({"users": bind_servicer(UserService(), add_UserServiceServicer_to_server)})
    """

    def __init__(self, servicer: Any, add_to_server: Callable[[Any, Any], None]) -> None:
        self.servicer = servicer
        self._add_to_server = add_to_server

    @property
    def service_name(self) -> str:
        return type(self.servicer).__name__

    def bind_service(self) -> grpc.GenericRpcHandler:
        capture = _HandlerCapture()
        self._add_to_server(self.servicer, capture)
        if len(capture.handlers) != 1:
            raise ConfigurationException(
                f"{self._add_to_server.__name__} registered {len(capture.handlers)} handlers, expected 1"
            )
        return capture.handlers[0]


def bind_servicer(servicer: Any, add_to_server: Callable[[Any, Any], None]) -> ServicerBinding:
    return ServicerBinding(servicer, add_to_server)


def entry_point_source(group: str) -> dict[str, Any]:
    """Load every service exported under an entry point group.

    Classes are instantiated with no arguments; other objects are used as-is.
    """
    candidates: dict[str, Any] = {}
    for ep in entry_points(group=group):
        obj = ep.load()
        candidates[ep.name] = obj() if inspect.isclass(obj) else obj
    return candidates
