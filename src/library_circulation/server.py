"""Library Circulation MCP Server

Wires the circulation engine to an MCP server:

- one ``DatabaseManager`` for the configured SQLite file
- one ``CirculationService`` (and with it one lock registry) per process
- tools for borrow / return / renew / reserve
- resources for per-user loans and stats and library-wide statistics

Logging goes to stderr so stdout stays clean for the stdio transport.
"""

import logging
import signal
import sys
from typing import Any

from fastmcp import FastMCP

from .config import CirculationConfig, get_config
from .database.session import DatabaseManager
from .observability import initialize_observability
from .resources import build_all_resources
from .service import CirculationService
from .tools import build_circulation_tools

logger = logging.getLogger(__name__)

INSTRUCTIONS = (
    "Library Circulation MCP Server - lends books to users. Use the borrow_book, "
    "return_book and renew_loan tools to change loans, and the library://users/... "
    "and library://admin/... resources to inspect loans, fines and statistics."
)


def configure_logging(config: CirculationConfig) -> None:
    logging.basicConfig(
        level=logging.DEBUG if config.is_development else getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    if not config.debug:
        logging.getLogger("fastmcp").setLevel(logging.WARNING)


def create_server(
    config: CirculationConfig | None = None,
    service: CirculationService | None = None,
) -> FastMCP:
    """
    Build a fully registered MCP server.

    Args:
        config: Server configuration (defaults to ``get_config()``)
        service: Circulation service to expose; built from ``config`` if omitted
    """
    config = config or get_config()

    if service is None:
        db_manager = DatabaseManager(config.get_database_url())
        db_manager.init_database()
        service = CirculationService(db_manager, config)

    mcp = FastMCP(name=config.server_name, version=config.server_version, instructions=INSTRUCTIONS)

    resources = build_all_resources(service)
    for resource in resources:
        uri = resource.get("uri_template", resource.get("uri"))
        logger.debug("Registering resource: %s with URI: %s", resource["name"], uri)
        mcp.resource(
            uri,
            name=resource["name"],
            description=resource["description"],
            mime_type=resource["mime_type"],
        )(resource["handler"])

    logger.info("Registered %d resources", len(resources))

    tools = build_circulation_tools(service)
    for tool in tools:
        logger.debug("Registering tool: %s", tool["name"])
        mcp.tool(name=tool["name"], description=tool["description"])(tool["handler"])

    logger.info("Registered %d tools", len(tools))
    return mcp


def run_server(config: CirculationConfig) -> None:
    """Run the server on the configured transport until interrupted."""
    mcp = create_server(config)

    def signal_handler(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, initiating shutdown...", signum)
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("MCP Server ready on %s transport", config.transport)
    if config.transport == "stdio":
        mcp.run(transport="stdio")
    else:
        mcp.run(transport="streamable-http", host=config.http_host, port=config.http_port)


def main() -> None:
    """Entry point for ``library-circulation``."""
    config = get_config()
    configure_logging(config)
    initialize_observability(config)

    try:
        logger.info("=" * 60)
        logger.info("Library Circulation MCP Server")
        logger.info("Version: %s", config.server_version)
        logger.info("Transport: %s", config.transport)
        logger.info("Database: %s", config.database_path)
        logger.info("=" * 60)

        run_server(config)

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception:
        logger.exception("Failed to start MCP server")
        sys.exit(1)


if __name__ == "__main__":
    main()
