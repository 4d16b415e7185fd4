"""Knowledge engine entry point."""

import asyncio
import contextlib
import logging
import signal

from knowledge_engine.config import settings
from knowledge_engine.engine import KnowledgeEngine
from knowledge_engine.server import KnowledgeServer

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


async def _serve() -> None:
    server = KnowledgeServer(KnowledgeEngine())
    await server.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        await server.stop()


def main() -> None:
    """Start the HTTP server and run until interrupted."""
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is empty — vector search and embeddings will fail")
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is empty — knowledge extraction will fail")
    logger.info("Starting knowledge engine on port %d...", settings.server_port)
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
