"""
Main entry point for the git-backed filesystem.
"""
import asyncio
import contextlib
import logging
import signal
from typing import Optional

import pyfuse3
import pyfuse3.asyncio
import uvicorn

from gitmount.config import ConfigError, build_parser, config_from_args
from gitmount.mount import mount, unmount
from gitmount.networking.api_server import APIHandler, create_app

logger = logging.getLogger(__name__)


class APIServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the mount."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


async def main() -> None:
    parser = build_parser()
    try:
        config = config_from_args(parser.parse_args())
    except ConfigError as err:
        parser.error(str(err))

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    pyfuse3.asyncio.enable()
    handle = await mount(config)

    server: Optional[APIServer] = None
    if config.port:
        app = create_app(APIHandler(handle.sync_manager, handle.tree))
        server = APIServer(uvicorn.Config(app=app, host=config.host, port=config.port,
                                          log_level="debug" if config.debug else "info"))

    fuse_task: Optional[asyncio.Task] = None

    def shutdown() -> None:
        logger.info("Shutting down")
        if fuse_task is not None and not fuse_task.done():
            pyfuse3.terminate()
        if server is not None:
            server.should_exit = True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown)

    async def fuse_main():
        await pyfuse3.main()
        logger.info("FUSE session finished")
        if server is not None:
            server.should_exit = True

    async def api_main():
        await server.serve()
        shutdown()

    try:
        async with asyncio.TaskGroup() as tg:
            fuse_task = tg.create_task(fuse_main())
            if server is not None:
                tg.create_task(api_main())
    finally:
        await unmount(handle)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
