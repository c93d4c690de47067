"""Load-balancing policies.

The picking itself is done by gRPC core; a policy selects the algorithm by
name and tracks the address set the resolver last pushed to it.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from core.logging_config import get_logger
from grpc_client.resolver import AddressSet


logger = get_logger(__name__)

AddressSetCallback = Callable[[AddressSet], None]


class LoadBalancerPolicy:
    name: str = ""

    def __init__(self) -> None:
        self._addresses: Optional[AddressSet] = None
        self._listeners: list[AddressSetCallback] = []

    @property
    def addresses(self) -> Optional[AddressSet]:
        return self._addresses

    def add_listener(self, callback: AddressSetCallback) -> None:
        self._listeners.append(callback)

    def handle_resolved_addresses(self, address_set: AddressSet) -> None:
        previous = self._addresses
        self._addresses = address_set
        if previous is not None:
            logger.debug(
                "grpc_lb_addresses_updated",
                policy=self.name,
                target=address_set.target,
                addresses=list(address_set.addresses),
            )
        for callback in list(self._listeners):
            callback(address_set)

    def channel_options(self) -> list[tuple[str, Any]]:
        return [("grpc.lb_policy_name", self.name)]


class RoundRobinPolicy(LoadBalancerPolicy):
    name = "round_robin"


class PickFirstPolicy(LoadBalancerPolicy):
    name = "pick_first"


# A factory returns a fresh policy per channel
LoadBalancerFactory = Callable[[], LoadBalancerPolicy]
