import asyncio
import signal

from core.config import settings
from core.logging_config import get_logger
from grpc_app.registry import entry_point_source
from grpc_app.server import create_runner


logger = get_logger(__name__)


async def main() -> None:
    group = settings.SERVICE_ENTRY_POINT_GROUP
    runner = create_runner(lambda: entry_point_source(group), settings.server)
    if not runner.services:
        logger.warning("grpc_no_services", message=f"No services exported under entry point group '{group}'")

    serving = asyncio.ensure_future(runner.serve())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, serving.cancel)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: runner.destroy())

    try:
        await serving
    except asyncio.CancelledError:
        logger.info("grpc_stopping")
    finally:
        await runner.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
