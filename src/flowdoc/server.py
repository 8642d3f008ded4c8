"""FlowDoc MCP server process.

Serves node documentation and workflow validation tools to MCP clients over
stdio. stdout carries protocol frames only; logs go to a rotating file and the
readiness announcement goes to stderr.
"""

import asyncio
import signal
import sqlite3
import sys

from . import __version__
from .catalog_index import CatalogIndex
from .catalog_loader import load_catalog
from .config import Settings
from .dispatcher import ProtocolDispatcher, open_stdio
from .errors import FlowdocError, StoreError
from .logging_config import configure_logging, get_logger
from .models import SyncResult
from .persistence import KnowledgeStore
from .platform_client import PlatformClient
from .tools import ToolContext, registry

logger = get_logger("server")

HELP = """FlowDoc - workflow node documentation and validation server

Usage: flowdoc [OPTIONS]

FlowDoc runs as an MCP (Model Context Protocol) server using stdio transport.
It is designed to be launched by MCP-compatible clients like Claude Desktop,
Cursor, or other LLM tools.

Options:
  -h, --help     Show this help message
  -V, --version  Show version number

Environment:
  FLOWDOC_DATA_DIR       Data directory (default: ~/.flowdoc)
  FLOWDOC_DB_PATH        Catalog cache database (default: <data dir>/nodes.db)
  FLOWDOC_LOG_LEVEL      Log level (default: INFO)
  FLOWDOC_TOOL_TIMEOUT   Seconds a tool call may run (default: 60)
  N8N_API_URL            Automation platform URL; enables platform tools
  N8N_API_KEY            Platform API key
  N8N_API_TIMEOUT        Seconds per platform API call (default: 30)

Other commands:
  flowdoc-sync           Reload the node catalog and print statistics

Logs are written to ~/.flowdoc/logs/ by default.
"""


async def bootstrap_if_empty(store: KnowledgeStore) -> SyncResult | None:
    """Load the bundled catalog into an empty store."""
    if not await store.is_empty():
        return None
    descriptors, revision = load_catalog()
    logger.info(f"Store is empty; bootstrapping {len(descriptors)} nodes at revision {revision}")
    result = await store.sync(descriptors, revision)
    if not result.ok:
        raise StoreError(f"Bootstrap sync failed: {result.error}")
    return result


def _install_signal_handlers(dispatcher: ProtocolDispatcher) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, dispatcher.request_shutdown)
        except NotImplementedError:
            logger.warning(f"Cannot install handler for {sig.name} on this platform")


async def run(settings: Settings) -> int:
    """Start up, serve until shutdown, and clean up. Returns the exit code."""
    store = None
    platform = None
    try:
        try:
            settings.data_dir.mkdir(parents=True, exist_ok=True)
            store = KnowledgeStore(settings.db_path)
            await bootstrap_if_empty(store)
            stats = await store.stats()
            platform = PlatformClient.from_settings(settings)
            reader, writer = await open_stdio()
        except (FlowdocError, sqlite3.Error, OSError, ValueError) as e:
            logger.exception("Startup failed")
            print(f"flowdoc: startup failed: {e}", file=sys.stderr)
            return 1

        context = ToolContext(store=store, index=CatalogIndex(store), platform=platform)
        dispatcher = ProtocolDispatcher(registry, context, tool_timeout=settings.tool_timeout)
        _install_signal_handlers(dispatcher)

        platform_note = f", platform {settings.api_url}" if platform else ", platform tools disabled"
        print(
            f"flowdoc {__version__} ready: {stats.total_count} nodes at revision {stats.revision}{platform_note}",
            file=sys.stderr,
            flush=True,
        )
        await dispatcher.serve(reader, writer)
        return 0
    finally:
        if platform is not None:
            await platform.close()
        if store is not None:
            await store.close_pool()
        logger.info("Server stopped")


def main():
    """Run the MCP server with stdio transport."""
    if len(sys.argv) > 1:
        if sys.argv[1] in ("--help", "-h"):
            print(HELP)
            return
        elif sys.argv[1] in ("--version", "-V"):
            print(f"flowdoc {__version__}")
            return

    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"flowdoc: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(log_dir=settings.log_dir, log_level=settings.log_level)
    sys.exit(asyncio.run(run(settings)))


if __name__ == "__main__":
    main()
