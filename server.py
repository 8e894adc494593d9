"""
SMTP MCP Server Implementation

This module exposes the mail client through the MCP (Model Context Protocol)
framework: sending email, testing the connection and reporting status.
"""

import asyncio
import logging
import os
import threading
from email.utils import formataddr, getaddresses
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from mail_message import TEXT_HTML, TEXT_PLAIN, Attachment, Email, new_message
from smtp import (
    KeepAlive,
    MailError,
    SMTPClient,
    SMTPConfig,
    ValidationError,
    connect,
    load_smtp_config,
)

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("smtp-mail")

# Lazily loaded configuration and, with keep-alive, the shared connection
smtp_config: Optional[SMTPConfig] = None
smtp_client: Optional[SMTPClient] = None
smtp_keep_alive: Optional[KeepAlive] = None
smtp_lock = threading.RLock()


def get_smtp_config() -> SMTPConfig:
    """
    Get or load the SMTP configuration from the environment.

    Returns:
        SMTPConfig: Validated configuration

    Raises:
        RuntimeError: If SMTP configuration is not available
    """
    global smtp_config

    with smtp_lock:
        if smtp_config is None:
            try:
                smtp_config = load_smtp_config()
            except ValidationError as e:
                raise RuntimeError(f"SMTP configuration is not available: {e}") from e
        return smtp_config


def reset_smtp_state() -> None:
    """
    Close the shared connection and forget the loaded configuration.

    The next tool call reloads configuration from the environment.
    """
    global smtp_config, smtp_client, smtp_keep_alive

    with smtp_lock:
        if smtp_keep_alive is not None:
            smtp_keep_alive.stop()
        if smtp_client is not None:
            smtp_client.close()
        smtp_keep_alive = None
        smtp_client = None
        smtp_config = None
        logger.debug("SMTP state reset")


def split_addresses(value: Optional[str]) -> List[str]:
    """Split a comma-separated address list, keeping display names."""
    if not value:
        return []
    return [formataddr(pair) for pair in getaddresses([value]) if pair[1]]


def deliver(email: Email) -> str:
    """
    Send ``email`` with the configured server.

    Without keep-alive every call opens and closes its own connection.
    With keep-alive one connection is shared across calls. A KeepAlive
    timer probes it while idle, and it is checked with a NOOP before
    reuse and reopened once the server has dropped it.

    Returns:
        str: Message-ID of the sent message
    """
    global smtp_client, smtp_keep_alive

    config = get_smtp_config()

    with smtp_lock:
        if not config.keep_alive:
            return email.send(connect(config))

        if smtp_client is not None and smtp_client.is_ready():
            try:
                smtp_client.noop()
            except MailError as e:
                logger.warning(f"Shared SMTP connection is no longer usable, reconnecting: {e}")

        if smtp_client is None or not smtp_client.is_ready():
            if smtp_keep_alive is not None:
                smtp_keep_alive.stop()
                smtp_keep_alive = None
            logger.info("Opening shared keep-alive SMTP connection")
            smtp_client = connect(config)
            smtp_keep_alive = KeepAlive(smtp_client, lock=smtp_lock).start()
        return email.send(smtp_client)


def build_email(
    to: str,
    subject: str,
    body: str,
    from_email: str,
    cc: Optional[str] = None,
    bcc: Optional[str] = None,
    html: bool = False,
    alternative_text: Optional[str] = None,
    reply_to: Optional[str] = None,
    priority: str = "normal",
    attachments: Optional[List[Dict[str, Any]]] = None,
) -> Email:
    """Translate tool arguments into an Email builder."""
    email = new_message()
    email.set_from(from_email).add_to(*split_addresses(to)).set_subject(subject)
    email.set_body(TEXT_HTML if html else TEXT_PLAIN, body)

    if alternative_text:
        email.add_alternative(TEXT_PLAIN, alternative_text)
    if cc:
        email.add_cc(*split_addresses(cc))
    if bcc:
        email.add_bcc(*split_addresses(bcc))
    if reply_to:
        email.set_reply_to(reply_to)
    email.set_priority(priority)

    for item in attachments or []:
        if not isinstance(item, dict):
            email.attach(item)  # recorded as a validation error
            continue
        email.attach(Attachment.from_base64(
            item.get('content_base64', ''),
            item.get('name', ''),
            inline=bool(item.get('inline', False)),
            mime_type=item.get('mime_type'),
        ))

    return email


@mcp.tool()
async def send_email(
    to: str,
    subject: str,
    body: str,
    from_email: Optional[str] = None,
    cc: Optional[str] = None,
    bcc: Optional[str] = None,
    html: bool = False,
    alternative_text: Optional[str] = None,
    reply_to: Optional[str] = None,
    priority: str = "normal",
    attachments: Optional[List[Dict[str, Any]]] = None,
) -> dict:
    """
    Send an email via SMTP.

    Args:
        to: Recipient email address (comma-separated for multiple)
        subject: Email subject line
        body: Email body content
        from_email: Sender address (optional, defaults to SMTP_FROM_EMAIL)
        cc: Carbon copy recipients (optional, comma-separated)
        bcc: Blind carbon copy recipients (optional, comma-separated)
        html: Whether body content is HTML (default: False)
        alternative_text: Plain text alternative for HTML bodies (optional)
        reply_to: Reply-To address (optional)
        priority: high, normal or low (default: normal)
        attachments: List of {"name", "content_base64", "inline", "mime_type"} dicts (optional)

    Returns:
        dict: Response containing success status and details
    """
    try:
        logger.info(f"MCP send_email tool called for recipients: {to}")

        sender = from_email or os.getenv('SMTP_FROM_EMAIL')
        if not sender:
            return {
                "success": False,
                "error": "No sender address: pass from_email or set SMTP_FROM_EMAIL"
            }

        email = build_email(
            to, subject, body,
            from_email=sender,
            cc=cc, bcc=bcc, html=html,
            alternative_text=alternative_text,
            reply_to=reply_to, priority=priority,
            attachments=attachments,
        )
        if email.get_error() is not None:
            logger.error(f"Invalid email request: {email.get_error()}")
            return {
                "success": False,
                "error": f"Invalid email request: {email.get_error()}"
            }

        message_id = await asyncio.to_thread(deliver, email)

        return {
            "success": True,
            "message_id": message_id,
            "recipients": len(email.get_recipients()),
        }

    except (MailError, RuntimeError) as e:
        error_msg = f"MCP send_email tool failed: {e}"
        logger.error(error_msg)
        return {
            "success": False,
            "error": error_msg,
            "error_type": type(e).__name__,
        }


@mcp.tool()
async def test_smtp_connection() -> dict:
    """
    Test SMTP connection without sending an email.

    Connects (including encryption and authentication), issues a NOOP
    and disconnects.

    Returns:
        dict: Connection test result
    """
    def probe() -> None:
        with connect(get_smtp_config()) as client:
            client.noop()

    try:
        logger.info("MCP test_smtp_connection tool called")
        await asyncio.to_thread(probe)
        config = get_smtp_config()
        return {
            "success": True,
            "server": f"{config.host}:{config.port}",
            "encryption": config.encryption.value,
        }

    except (MailError, RuntimeError) as e:
        error_msg = f"SMTP connection test failed: {e}"
        logger.error(error_msg)
        return {
            "success": False,
            "error": error_msg,
            "error_type": type(e).__name__,
        }


@mcp.tool()
async def get_smtp_status() -> dict:
    """
    Get SMTP service status and configuration information.

    Credentials are never included.

    Returns:
        dict: Configuration summary and shared connection state
    """
    try:
        config = get_smtp_config()
    except RuntimeError as e:
        return {
            "configured": False,
            "error": str(e)
        }

    with smtp_lock:
        connection_state = smtp_client.state.value if smtp_client is not None else "disconnected"

    return {
        "configured": True,
        "host": config.host,
        "port": config.port,
        "encryption": config.encryption.value,
        "auth_method": config.auth_method.value if config.has_credentials else None,
        "authenticated": config.has_credentials,
        "connect_timeout": config.connect_timeout,
        "send_timeout": config.send_timeout,
        "keep_alive": config.keep_alive,
        "verify_tls": config.verify_tls,
        "connection_state": connection_state,
    }
