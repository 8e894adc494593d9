"""
SMTP Connection Manager

This module owns the transport side of the mail client: server
configuration, connecting with optional SSL/TLS or STARTTLS encryption,
authentication, idle NOOP probes and transmitting fully built messages.
"""

import enum
import logging
import os
import re
import smtplib
import ssl
import threading
from dataclasses import dataclass, field
from email.utils import parseaddr
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

# Recommended idle probe cadence for keep-alive connections (seconds)
NOOP_INTERVAL = 30.0

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_SEND_TIMEOUT = 10.0

# Email validation regex pattern
EMAIL_REGEX = re.compile(
    r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
)

_TRUE_VALUES = ('true', '1', 'yes', 'on')
_FALSE_VALUES = ('false', '0', 'no', 'off')


class MailError(Exception):
    """Base exception for all mail client errors."""


class SMTPConnectionError(MailError, ConnectionError):
    """Raised when connecting fails (network, timeout, TLS handshake or protocol)."""


class ClosedConnectionError(SMTPConnectionError):
    """Raised when an operation is attempted on a closed connection."""


class AuthError(MailError):
    """Raised when the server rejects the configured credentials."""


class SendError(MailError):
    """Raised when a message cannot be transmitted or the server rejects it."""


class ValidationError(MailError, ValueError):
    """Raised for malformed addresses, header values or configuration."""


class AttachmentReadError(MailError):
    """Raised when an attachment source cannot be read or decoded."""


class BuildError(MailError):
    """Raised when a message cannot be serialized for sending."""


def validate_email_address(email: str) -> bool:
    """
    Validate email address format using regex.

    Args:
        email: Bare email address to validate (no display name)

    Returns:
        bool: True if email format is valid, False otherwise
    """
    if not email or not isinstance(email, str):
        return False

    email = email.strip()
    if not email:
        return False

    return bool(EMAIL_REGEX.match(email))


def parse_address(value: str) -> Tuple[str, str]:
    """
    Parse an address that may carry a display name.

    Accepts both ``user@example.com`` and ``Name <user@example.com>``.

    Args:
        value: Address as supplied by the caller

    Returns:
        Tuple[str, str]: Display name (possibly empty) and bare address

    Raises:
        ValidationError: If the value is not a syntactically valid address
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Email address must be a non-empty string")

    if '\r' in value or '\n' in value:
        raise ValidationError(f"Email address contains line breaks: {value!r}")

    name, address = parseaddr(value)
    if not validate_email_address(address):
        raise ValidationError(f"Invalid email address: {value}")

    return name, address


class Encryption(enum.Enum):
    """Transport encryption modes."""

    NONE = 'none'
    SSL_TLS = 'ssl-tls'
    STARTTLS = 'starttls'

    @classmethod
    def parse(cls, value) -> 'Encryption':
        if isinstance(value, cls):
            return value

        normalized = str(value).strip().lower().replace('_', '-')
        # Older names: "ssl" is implicit TLS, "tls" is the STARTTLS upgrade
        aliases = {'ssl': cls.SSL_TLS, 'tls': cls.STARTTLS, '': cls.NONE}
        if normalized in aliases:
            return aliases[normalized]

        try:
            return cls(normalized)
        except ValueError:
            choices = ', '.join(member.value for member in cls)
            raise ValidationError(f"Invalid encryption mode: '{value}'. Expected one of: {choices}") from None


class AuthMethod(enum.Enum):
    """SASL mechanisms supported for SMTP AUTH."""

    PLAIN = 'plain'
    LOGIN = 'login'
    CRAM_MD5 = 'cram-md5'

    @classmethod
    def parse(cls, value) -> 'AuthMethod':
        if isinstance(value, cls):
            return value

        normalized = str(value).strip().lower().replace('_', '-')
        try:
            return cls(normalized)
        except ValueError:
            choices = ', '.join(member.value for member in cls)
            raise ValidationError(f"Invalid authentication method: '{value}'. Expected one of: {choices}") from None

    @property
    def mechanism(self) -> str:
        """SASL mechanism name as sent in the AUTH command."""
        return self.value.upper()


class ConnectionState(enum.Enum):
    """Lifecycle states of an SMTPClient."""

    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    TLS_HANDSHAKE = 'tls_handshake'
    AUTHENTICATING = 'authenticating'
    READY = 'ready'
    SENDING = 'sending'
    CLOSED = 'closed'


@dataclass(frozen=True)
class SMTPConfig:
    """Configuration for SMTP server connection and authentication."""

    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    encryption: Encryption = Encryption.NONE
    auth_method: AuthMethod = AuthMethod.PLAIN
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    send_timeout: float = DEFAULT_SEND_TIMEOUT
    keep_alive: bool = False
    local_hostname: Optional[str] = None  # EHLO/HELO name, smtplib picks the FQDN when unset
    verify_tls: bool = True

    def __post_init__(self):
        # Accept plain strings for the enum fields
        object.__setattr__(self, 'encryption', Encryption.parse(self.encryption))
        object.__setattr__(self, 'auth_method', AuthMethod.parse(self.auth_method))

    @property
    def has_credentials(self) -> bool:
        """Whether AUTH should run after the connection is established."""
        return bool(self.username) and bool(self.password)

    @classmethod
    def from_env(cls) -> 'SMTPConfig':
        """
        Load SMTP configuration from environment variables.

        Required environment variables:
        - SMTP_HOST: SMTP server hostname
        - SMTP_PORT: SMTP server port

        Optional environment variables:
        - SMTP_USERNAME / SMTP_PASSWORD: Credentials (AUTH runs only when both are set)
        - SMTP_ENCRYPTION: none, ssl-tls or starttls (default: none)
        - SMTP_AUTH: plain, login or cram-md5 (default: plain)
        - SMTP_CONNECT_TIMEOUT: Connect timeout in seconds (default: 10)
        - SMTP_SEND_TIMEOUT: Send timeout in seconds (default: 10)
        - SMTP_KEEP_ALIVE: Reuse one connection for several messages (default: false)
        - SMTP_HELO: Name announced in EHLO/HELO
        - SMTP_VERIFY_TLS: Verify server certificates (default: true)

        Returns:
            SMTPConfig: Validated SMTP settings

        Raises:
            ValidationError: If required configuration is missing or invalid
        """
        required_vars = ['SMTP_HOST', 'SMTP_PORT']
        missing_vars = [var for var in required_vars if not os.getenv(var)]

        if missing_vars:
            raise ValidationError(
                f"Missing required SMTP configuration environment variables: {', '.join(missing_vars)}. "
                f"Please set the following environment variables: {', '.join(required_vars)}"
            )

        try:
            port = int(os.getenv('SMTP_PORT'))
        except (ValueError, TypeError):
            raise ValidationError(
                f"Invalid SMTP_PORT value: '{os.getenv('SMTP_PORT')}'. "
                "SMTP_PORT must be a valid integer (e.g., 587, 465, 25)"
            ) from None

        config = cls(
            host=os.getenv('SMTP_HOST'),
            port=port,
            username=os.getenv('SMTP_USERNAME') or None,
            password=os.getenv('SMTP_PASSWORD') or None,
            encryption=os.getenv('SMTP_ENCRYPTION', Encryption.NONE.value),
            auth_method=os.getenv('SMTP_AUTH', AuthMethod.PLAIN.value),
            connect_timeout=_env_seconds('SMTP_CONNECT_TIMEOUT', DEFAULT_CONNECT_TIMEOUT),
            send_timeout=_env_seconds('SMTP_SEND_TIMEOUT', DEFAULT_SEND_TIMEOUT),
            keep_alive=_env_bool('SMTP_KEEP_ALIVE', False),
            local_hostname=os.getenv('SMTP_HELO') or None,
            verify_tls=_env_bool('SMTP_VERIFY_TLS', True),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        Validate SMTP configuration parameters.

        Raises:
            ValidationError: If configuration parameters are invalid
        """
        if not self.host or not self.host.strip():
            raise ValidationError("SMTP host cannot be empty")

        if not isinstance(self.port, int) or not (1 <= self.port <= 65535):
            raise ValidationError(f"SMTP port must be between 1 and 65535, got: {self.port}")

        if self.connect_timeout <= 0:
            raise ValidationError(f"SMTP connect timeout must be positive, got: {self.connect_timeout}")

        if self.send_timeout <= 0:
            raise ValidationError(f"SMTP send timeout must be positive, got: {self.send_timeout}")

        if self.password and not self.username:
            raise ValidationError("SMTP password is set but username is empty")

        # Common port mismatches are legal but usually a mistake
        if self.encryption is Encryption.SSL_TLS and self.port in (25, 587):
            logger.warning(f"SSL/TLS is enabled but port {self.port} usually expects plain or STARTTLS connections")

        if self.encryption is Encryption.STARTTLS and self.port == 465:
            logger.warning("STARTTLS is enabled but port 465 usually expects implicit SSL/TLS")

        logger.debug(f"SMTP configuration validated for {self.host}:{self.port}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default

    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValidationError(f"Invalid {name} value: '{raw}'. Expected true or false")


def _env_seconds(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default

    try:
        return float(raw)
    except ValueError:
        raise ValidationError(
            f"Invalid {name} value: '{raw}'. {name} must be a number of seconds"
        ) from None


def load_smtp_config() -> SMTPConfig:
    """
    Load and validate SMTP configuration from environment variables.

    Returns:
        SMTPConfig: Validated SMTP configuration

    Raises:
        ValidationError: If configuration is missing or invalid
    """
    try:
        config = SMTPConfig.from_env()
        logger.info(f"SMTP configuration loaded for {config.host}:{config.port} ({config.encryption.value})")
        return config
    except ValidationError as e:
        logger.error(f"Failed to load SMTP configuration: {e}")
        raise


class SMTPClient:
    """
    A live connection to one SMTP server.

    The client walks through DISCONNECTED -> CONNECTING -> (TLS_HANDSHAKE)
    -> (AUTHENTICATING) -> READY, then READY <-> SENDING for every message.
    Any failure moves it to CLOSED, which is terminal.

    A client is meant for one logical sender at a time. A second send (or
    a send racing a NOOP) while one is in flight is refused, never queued.
    """

    def __init__(self, config: SMTPConfig):
        """
        Initialize SMTP client with configuration.

        Args:
            config: SMTP configuration settings
        """
        self.config = config
        self.connection: Optional[smtplib.SMTP] = None
        self.state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<SMTPClient {self.config.host}:{self.config.port} {self.state.value}>"

    def open(self) -> 'SMTPClient':
        """
        Establish the SMTP connection, negotiate encryption and authenticate.

        With SSL/TLS the TLS handshake completes before the server greeting
        is read. With STARTTLS the greeting and EHLO happen in plain text,
        the connection is upgraded and EHLO is issued again.

        Returns:
            SMTPClient: This client, in the READY state

        Raises:
            SMTPConnectionError: On timeout, network, TLS or protocol failure
            AuthError: If the server rejects the credentials
        """
        if self.state is ConnectionState.CLOSED:
            raise ClosedConnectionError("SMTP connection is closed; create a new client to reconnect")
        if self.state is not ConnectionState.DISCONNECTED:
            raise SMTPConnectionError(f"SMTP client is already {self.state.value}")

        self.config.validate()
        self.state = ConnectionState.CONNECTING

        try:
            self._open_transport()
            self._authenticate()
        except MailError:
            self._abort()
            raise
        except smtplib.SMTPAuthenticationError as e:
            self._abort()
            error_msg = f"SMTP authentication failed for {self.config.username}: {e}"
            logger.error(error_msg)
            raise AuthError(error_msg) from e
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            self._abort()
            error_msg = f"SMTP connection to {self.config.host}:{self.config.port} failed: {e}"
            logger.error(error_msg)
            raise SMTPConnectionError(error_msg) from e

        # Everything after the handshake is bounded by the send timeout
        if self.connection.sock is not None:
            self.connection.sock.settimeout(self.config.send_timeout)

        self.state = ConnectionState.READY
        logger.info(f"SMTP connection ready on {self.config.host}:{self.config.port}")
        return self

    def _open_transport(self) -> None:
        config = self.config
        logger.info(f"Attempting SMTP connection to {config.host}:{config.port} ({config.encryption.value})")

        if config.encryption is Encryption.SSL_TLS:
            # Implicit TLS: the handshake runs inside connect(), before the greeting
            self.state = ConnectionState.TLS_HANDSHAKE
            self.connection = smtplib.SMTP_SSL(
                host=config.host,
                port=config.port,
                local_hostname=config.local_hostname,
                timeout=config.connect_timeout,
                context=self._tls_context(),
            )
        else:
            self.connection = smtplib.SMTP(
                host=config.host,
                port=config.port,
                local_hostname=config.local_hostname,
                timeout=config.connect_timeout,
            )

        if logger.isEnabledFor(logging.DEBUG):
            self.connection.set_debuglevel(1)

        if config.encryption is Encryption.STARTTLS:
            self.connection.ehlo()
            if not self.connection.has_extn('starttls'):
                raise SMTPConnectionError(f"Server {config.host} does not support STARTTLS")

            logger.debug("Upgrading connection with STARTTLS")
            self.state = ConnectionState.TLS_HANDSHAKE
            self.connection.starttls(context=self._tls_context())
            # Capabilities advertised before the upgrade are discarded
            self.connection.ehlo()

        logger.debug(f"SMTP transport established to {config.host}:{config.port}")

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.config.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _authenticate(self) -> None:
        if not self.config.has_credentials:
            logger.debug("No credentials configured, skipping AUTH")
            return

        self.state = ConnectionState.AUTHENTICATING
        method = self.config.auth_method
        connection = self.connection
        connection.ehlo_or_helo_if_needed()

        if not connection.has_extn('auth'):
            raise AuthError(f"Server {self.config.host} does not advertise SMTP AUTH")

        logger.debug(f"Authenticating as {self.config.username} using {method.mechanism}")

        # smtplib's auth_* responders read the credentials from these attributes
        connection.user = self.config.username
        connection.password = self.config.password
        authobject = getattr(connection, 'auth_' + method.name.lower())
        connection.auth(method.mechanism, authobject)

        logger.info(f"SMTP authentication successful for {self.config.username}")

    def noop(self) -> None:
        """
        Send a NOOP to keep an idle connection from timing out server-side.

        The probe is skipped when a send is in flight, since the connection
        is active anyway.

        Raises:
            ClosedConnectionError: If the connection is closed
            SMTPConnectionError: If the probe fails; the connection is closed
        """
        self._ensure_open()

        if not self._lock.acquire(blocking=False):
            logger.debug("Send in flight, skipping NOOP")
            return

        try:
            self._ensure_open()
            code, resp = self.connection.noop()
            if code != 250:
                raise smtplib.SMTPResponseException(code, resp)
            logger.debug("NOOP acknowledged")
        except ClosedConnectionError:
            raise
        except (smtplib.SMTPException, OSError) as e:
            self._abort()
            error_msg = f"SMTP NOOP failed on {self.config.host}:{self.config.port}: {e}"
            logger.error(error_msg)
            raise SMTPConnectionError(error_msg) from e
        finally:
            self._lock.release()

    def send(self, wire_message) -> None:
        """
        Transmit a fully built message in a single SMTP transaction.

        Delivery is all-or-nothing: if the server rejects the sender, any
        recipient or the message data, nothing is submitted and SendError
        is raised.

        Args:
            wire_message: WireMessage produced by ``Email.build()``

        Raises:
            ClosedConnectionError: If the connection is closed
            SendError: On transport fault, server rejection or timeout;
                the connection is closed
        """
        self._ensure_open()

        if not self._lock.acquire(blocking=False):
            raise SendError("Another send is already in flight on this connection")

        try:
            self._ensure_open()
            self.state = ConnectionState.SENDING
            logger.debug(f"Sending message {wire_message.message_id} to {len(wire_message.recipients)} recipients")
            self._transact(wire_message)
            self.state = ConnectionState.READY
            logger.info(f"Message {wire_message.message_id} accepted for {len(wire_message.recipients)} recipients")
        except SendError:
            self._abort()
            raise
        except ClosedConnectionError:
            raise
        except (smtplib.SMTPException, OSError) as e:
            self._abort()
            error_msg = f"SMTP error during message sending: {e}"
            logger.error(error_msg)
            raise SendError(error_msg) from e
        finally:
            self._lock.release()

    def _transact(self, wire_message) -> None:
        connection = self.connection

        if not wire_message.recipients:
            raise SendError("No recipients specified in message")

        connection.ehlo_or_helo_if_needed()
        options = []
        if connection.does_esmtp and connection.has_extn('size'):
            options.append(f"SIZE={len(wire_message.data)}")

        code, resp = connection.mail(wire_message.envelope_from, options)
        if code != 250:
            raise SendError(f"Sender address was refused by SMTP server: {wire_message.envelope_from} - {code} {_text(resp)}")

        for recipient in wire_message.recipients:
            code, resp = connection.rcpt(recipient)
            if code not in (250, 251):
                raise SendError(f"Recipient was refused by SMTP server: {recipient} - {code} {_text(resp)}")

        code, resp = connection.data(wire_message.data)
        if code != 250:
            raise SendError(f"SMTP server rejected message data: {code} {_text(resp)}")

        if self.config.keep_alive:
            connection.rset()

    def close(self) -> None:
        """
        Send QUIT and close the connection. Safe to call more than once.
        """
        with self._lock:
            if self.state is ConnectionState.CLOSED:
                return

            connection = self.connection
            self.connection = None
            self.state = ConnectionState.CLOSED

        if connection is None:
            return

        try:
            logger.debug("Closing SMTP connection")
            connection.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Error during SMTP disconnect: {e}")
            connection.close()
        logger.info("SMTP connection closed")

    def _abort(self) -> None:
        # Failure path: drop the socket without a QUIT round trip
        connection = self.connection
        self.connection = None
        self.state = ConnectionState.CLOSED
        if connection is not None:
            connection.close()

    def _ensure_open(self) -> None:
        if self.state is ConnectionState.CLOSED:
            raise ClosedConnectionError("SMTP connection is closed")
        if self.state is ConnectionState.DISCONNECTED:
            raise SMTPConnectionError("SMTP client is not connected. Call connect() first.")

    def is_ready(self) -> bool:
        """Whether the client can accept a send right now."""
        return self.state is ConnectionState.READY

    def __enter__(self) -> 'SMTPClient':
        if self.state is ConnectionState.DISCONNECTED:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def connect(config: SMTPConfig) -> SMTPClient:
    """
    Open a new SMTP connection for ``config``.

    Args:
        config: SMTP configuration settings

    Returns:
        SMTPClient: A READY client

    Raises:
        SMTPConnectionError: On timeout, network, TLS or protocol failure
        AuthError: If the server rejects the credentials
    """
    return SMTPClient(config).open()


class KeepAlive:
    """
    Caller-owned timer that probes an idle keep-alive connection.

    Usage:
        client = connect(config)
        with KeepAlive(client):
            ...  # send messages whenever they are ready

    The timer stops itself when a probe fails; the failure is logged and
    the client is left CLOSED for the caller to notice on its next send.

    Callers that serialize their own sends with a lock can pass it as
    ``lock``; a probe is skipped whenever that lock is busy.
    """

    def __init__(self, client: SMTPClient, interval: float = NOOP_INTERVAL, lock=None):
        if interval <= 0:
            raise ValidationError(f"Keep-alive interval must be positive, got: {interval}")

        self.client = client
        self.interval = interval
        self.lock = lock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> 'KeepAlive':
        if self.is_running():
            return self

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"smtp-keepalive-{self.client.config.host}",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Keep-alive started with {self.interval}s interval")
        return self

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join()
            logger.debug("Keep-alive stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            if self.lock is not None and not self.lock.acquire(blocking=False):
                logger.debug("Caller busy, skipping keep-alive probe")
                continue
            try:
                self.client.noop()
            except MailError as e:
                logger.warning(f"Keep-alive probe failed, stopping: {e}")
                return
            finally:
                if self.lock is not None:
                    self.lock.release()

    def __enter__(self) -> 'KeepAlive':
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


def _text(resp) -> str:
    if isinstance(resp, bytes):
        return resp.decode('utf-8', errors='replace')
    return str(resp)
