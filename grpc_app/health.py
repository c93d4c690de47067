"""Standard grpc.health.v1 service wired into the server lifecycle."""
from __future__ import annotations

from grpc_health.v1 import health, health_pb2, health_pb2_grpc

from core.logging_config import get_logger
from grpc_app.builder import ServerBuilder
from grpc_app.events import ServerInitializedEvent
from grpc_app.registry import bind_servicer


logger = get_logger(__name__)


class HealthRegistrar:
    """Adds the health service at build time and reports SERVING once started."""

    def __init__(self) -> None:
        self.servicer = health.aio.HealthServicer()

    def configure(self, builder: ServerBuilder) -> None:
        builder.add_service(
            bind_servicer(self.servicer, health_pb2_grpc.add_HealthServicer_to_server).bind_service()
        )

    async def on_server_initialized(self, event: ServerInitializedEvent) -> None:
        await self.servicer.set("", health_pb2.HealthCheckResponse.SERVING)
        for svc in event.runner.services:
            await self.servicer.set(svc.service_name, health_pb2.HealthCheckResponse.SERVING)
        logger.info("grpc_health_serving", services=[svc.service_name for svc in event.runner.services])
