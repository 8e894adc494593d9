"""
Main entry point for the SMTP MCP Server.

This module provides the main entry point for starting the SMTP MCP server
over stdio or HTTP, including logging setup, startup configuration
validation and connection cleanup on shutdown.
"""

import asyncio
import logging
import os
import sys

from server import mcp, reset_smtp_state
from smtp import ValidationError, load_smtp_config

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """
    Configure logging for the application.

    Sets up logging level based on the LOG_LEVEL environment variable and
    configures the formatter for console output.
    """
    log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL
    }

    level = level_map.get(log_level, logging.INFO)

    # Logs go to stderr; stdout belongs to the stdio transport
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr
    )

    logger.info(f"Logging configured at {log_level} level")


def validate_startup_configuration() -> bool:
    """
    Validate SMTP configuration on startup.

    Returns:
        bool: True if configuration is valid, False otherwise
    """
    try:
        logger.info("Validating startup configuration...")
        config = load_smtp_config()
    except ValidationError as e:
        logger.error(f"Startup configuration validation failed: {e}")
        logger.error("Please set at least SMTP_HOST and SMTP_PORT")
        return False

    logger.info("Configuration validation successful:")
    logger.info(f"  - Server: {config.host}:{config.port} ({config.encryption.value})")
    logger.info(f"  - Authentication: {config.auth_method.value if config.has_credentials else 'disabled'}")
    logger.info(f"  - Keep-alive: {config.keep_alive}")
    return True


def get_transport_settings() -> dict:
    """
    Read MCP transport settings from the environment.

    Returns:
        dict: transport, host and port

    Raises:
        ValidationError: If a value is invalid
    """
    transport = os.getenv('MCP_TRANSPORT', 'stdio').strip().lower()
    if transport not in ('stdio', 'http'):
        raise ValidationError(f"Invalid MCP_TRANSPORT value: '{transport}'. Expected stdio or http")

    try:
        port = int(os.getenv('MCP_PORT', '8000'))
    except ValueError:
        raise ValidationError(f"Invalid MCP_PORT value: '{os.getenv('MCP_PORT')}'") from None

    return {
        "transport": transport,
        "host": os.getenv('MCP_HOST', '127.0.0.1'),
        "port": port,
    }


async def run_server(transport: str = "stdio", host: str = "127.0.0.1", port: int = 8000) -> None:
    """
    Run the SMTP MCP server.

    Args:
        transport: Transport type ("stdio" or "http")
        host: Host to bind to for HTTP transport
        port: Port to bind to for HTTP transport
    """
    try:
        logger.info(f"Starting SMTP MCP Server with {transport} transport...")

        if transport == "http":
            logger.info(f"HTTP server will be available at http://{host}:{port}/mcp")
            await mcp.run_http_async(host=host, port=port)
        else:
            logger.info("Server running with stdio transport (stdin/stdout)")
            await mcp.run_stdio_async()

    except Exception as e:
        logger.error(f"Server error: {e}")
        raise
    finally:
        reset_smtp_state()
        logger.info("SMTP MCP Server stopped")


def main() -> None:
    """
    Main entry point for the SMTP MCP Server.

    Sets up logging, validates startup configuration and runs the server
    until it is interrupted.
    """
    setup_logging()

    try:
        settings = get_transport_settings()
    except ValidationError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info("=" * 60)
    logger.info("SMTP MCP Server - Starting Up")
    logger.info(f"Transport: {settings['transport']}")
    if settings['transport'] == "http":
        logger.info(f"HTTP Server: {settings['host']}:{settings['port']}")
    logger.info("=" * 60)

    if not validate_startup_configuration():
        logger.error("Startup configuration validation failed - exiting")
        sys.exit(1)

    try:
        asyncio.run(run_server(settings['transport'], settings['host'], settings['port']))
    except KeyboardInterrupt:
        logger.info("Server interrupted by user")
    except Exception as e:
        logger.error(f"Server failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
