"""
Email Message Builder

Fluent builder that assembles an outgoing message (headers, text and HTML
bodies, alternative parts, inline and regular attachments, priority) into
a wire-ready payload for ``SMTPClient.send``.

Configuration calls never raise. The first invalid input is recorded and
every later configuration call becomes a no-op, so a single check of
``get_error()`` (or the ``BuildError`` raised by ``build()``) covers the
whole chain.
"""

import base64
import binascii
import codecs
import enum
import functools
import logging
import mimetypes
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email import encoders
from email.charset import QP, Charset
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import format_datetime, formataddr, formatdate, make_msgid
from typing import List, Optional, Tuple, Union

from smtp import (
    AttachmentReadError,
    BuildError,
    MailError,
    SMTPClient,
    ValidationError,
    parse_address,
)

logger = logging.getLogger(__name__)

MAILER_NAME = 'py-simple-mail'

# Attachment size limits (in bytes)
MAX_ATTACHMENT_SIZE = 25 * 1024 * 1024  # 25MB default limit

# Headers the builder owns; add_header() cannot override them
RESERVED_HEADERS = frozenset(h.lower() for h in (
    'From', 'To', 'Cc', 'Bcc', 'Subject', 'Date', 'Message-ID', 'Reply-To',
    'Return-Path', 'Sender', 'MIME-Version', 'Content-Type',
    'Content-Transfer-Encoding', 'X-Priority', 'X-MSMail-Priority', 'Importance',
))

_HEADER_NAME_REGEX = re.compile(r'^[!-9;-~]+$')

_DATE_REGEX = re.compile(
    r'^(?P<stamp>\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}(?::\d{2})?)(?:\s*(?P<zone>[A-Za-z]+|[+-]\d{4}))?$'
)

_ZONE_OFFSETS = {
    'UT': 0, 'UTC': 0, 'GMT': 0, 'Z': 0,
    'EST': -5, 'EDT': -4,
    'CST': -6, 'CDT': -5,
    'MST': -7, 'MDT': -6,
    'PST': -8, 'PDT': -7,
}


class ContentType(enum.Enum):
    """Body content types."""

    TEXT_PLAIN = 'text/plain'
    TEXT_HTML = 'text/html'
    TEXT_CALENDAR = 'text/calendar'

    @classmethod
    def parse(cls, value) -> 'ContentType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unsupported body content type: '{value}'") from None

    @property
    def subtype(self) -> str:
        return self.value.split('/', 1)[1]


TEXT_PLAIN = ContentType.TEXT_PLAIN
TEXT_HTML = ContentType.TEXT_HTML
TEXT_CALENDAR = ContentType.TEXT_CALENDAR


class Priority(enum.Enum):
    """Message priority, rendered as X-Priority / Importance headers."""

    HIGH = 'high'
    NORMAL = 'normal'
    LOW = 'low'

    @classmethod
    def parse(cls, value) -> 'Priority':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid priority: '{value}'. Expected high, normal or low") from None

    def headers(self) -> List[Tuple[str, str]]:
        if self is Priority.HIGH:
            return [('X-Priority', '1 (Highest)'), ('X-MSMail-Priority', 'High'), ('Importance', 'High')]
        if self is Priority.LOW:
            return [('X-Priority', '5 (Lowest)'), ('X-MSMail-Priority', 'Low'), ('Importance', 'Low')]
        return []


def detect_mime_type(filename: str, content: Optional[bytes] = None) -> str:
    """
    Detect MIME type for a file based on filename and optionally content.

    Args:
        filename: Name of the file
        content: Optional file content for content-based detection

    Returns:
        str: Detected MIME type
    """
    mime_type, _ = mimetypes.guess_type(filename)
    if mime_type:
        return mime_type

    # Basic content sniffing for common types
    if content:
        if content.startswith(b'\x89PNG\r\n\x1a\n'):
            return 'image/png'
        if content.startswith(b'\xff\xd8\xff'):
            return 'image/jpeg'
        if content.startswith(b'GIF8'):
            return 'image/gif'
        if content.startswith(b'%PDF'):
            return 'application/pdf'
        if content.startswith(b'PK\x03\x04'):
            return 'application/zip'

    return 'application/octet-stream'


def validate_filename(filename: str) -> bool:
    """
    Validate attachment filename for header safety.

    Args:
        filename: Filename to validate

    Returns:
        bool: True if filename is valid, False otherwise
    """
    if not filename or not isinstance(filename, str):
        return False

    # Path components and header-breaking characters
    if '/' in filename or '\\' in filename or filename in ('.', '..'):
        return False
    if any(char in filename for char in '\r\n"'):
        return False

    return len(filename) <= 255


@dataclass(frozen=True)
class Attachment:
    """
    Attachment source description.

    Exactly one of ``file_path``, ``b64_data`` or ``data`` must be given.
    ``name`` is required for in-memory sources and defaults to the file's
    base name for ``file_path``. Inline attachments are referenced from the
    HTML body as ``cid:<name>``.
    """

    file_path: Optional[str] = None
    b64_data: Optional[str] = None
    data: Optional[bytes] = None
    name: Optional[str] = None
    mime_type: Optional[str] = None
    inline: bool = False

    @classmethod
    def from_file(cls, file_path: str, name: Optional[str] = None, inline: bool = False) -> 'Attachment':
        return cls(file_path=file_path, name=name, inline=inline)

    @classmethod
    def from_base64(cls, b64_data: str, name: str, inline: bool = False,
                    mime_type: Optional[str] = None) -> 'Attachment':
        return cls(b64_data=b64_data, name=name, inline=inline, mime_type=mime_type)

    @classmethod
    def from_bytes(cls, data: bytes, name: str, inline: bool = False,
                   mime_type: Optional[str] = None) -> 'Attachment':
        return cls(data=data, name=name, inline=inline, mime_type=mime_type)

    @property
    def filename(self) -> str:
        if self.name:
            return self.name
        if self.file_path:
            return os.path.basename(self.file_path)
        return ''

    def read(self) -> bytes:
        """
        Resolve the attachment content.

        Returns:
            bytes: Raw attachment content

        Raises:
            ValidationError: If the source description is inconsistent
            AttachmentReadError: If the file cannot be read or base64 is invalid
        """
        if self.file_path is not None and not isinstance(self.file_path, (str, os.PathLike)):
            raise ValidationError(f"Attachment file_path must be a path, got {type(self.file_path).__name__}")

        sources = [s for s in (self.file_path, self.b64_data, self.data) if s is not None]
        if len(sources) != 1:
            raise ValidationError("Attachment needs exactly one of file_path, b64_data or data")

        if not validate_filename(self.filename):
            raise ValidationError(f"Invalid attachment filename: {self.filename!r}")

        if self.file_path is not None:
            try:
                with open(self.file_path, 'rb') as f:
                    content = f.read()
            except OSError as e:
                raise AttachmentReadError(f"Cannot read attachment file '{self.file_path}': {e}") from e
        elif self.b64_data is not None:
            if not isinstance(self.b64_data, (str, bytes)):
                raise ValidationError("Attachment base64 data must be a string")
            # Line breaks are legal in base64 bodies (RFC 2045 wraps at 76 columns)
            encoded = self.b64_data.split()
            encoded = ''.join(encoded) if isinstance(self.b64_data, str) else b''.join(encoded)
            try:
                content = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as e:
                raise AttachmentReadError(f"Invalid base64 data for attachment '{self.filename}': {e}") from e
        else:
            if not isinstance(self.data, (bytes, bytearray)):
                raise ValidationError("Attachment data must be bytes")
            content = bytes(self.data)

        if len(content) > MAX_ATTACHMENT_SIZE:
            size_mb = len(content) / (1024 * 1024)
            limit_mb = MAX_ATTACHMENT_SIZE / (1024 * 1024)
            raise ValidationError(
                f"Attachment '{self.filename}' size ({size_mb:.1f}MB) exceeds maximum allowed size ({limit_mb}MB)"
            )

        return content


@dataclass(frozen=True)
class WireMessage:
    """A serialized message plus its SMTP envelope."""

    envelope_from: str
    recipients: Tuple[str, ...]
    data: bytes
    message_id: str

    def as_string(self) -> str:
        return self.data.decode('utf-8', errors='replace')


def _configuration(method):
    """Apply a builder call unless the builder already holds an error."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if self.error is not None:
            return self
        try:
            method(self, *args, **kwargs)
        except MailError as e:
            logger.debug(f"Email builder error in {method.__name__}: {e}")
            self.error = e
        return self

    return wrapper


class Email:
    """
    Fluent email builder.

    Usage:
        email = (new_message()
                 .set_from("From Example <from@example.com>")
                 .add_to("to@example.com")
                 .set_subject("Hello"))
        email.set_body(TEXT_HTML, "<p>Hello</p>")
        if email.get_error() is None:
            email.send(client)
    """

    def __init__(self, charset: str = 'utf-8'):
        self.error: Optional[MailError] = None
        self.charset = charset
        self.subject = ''
        self._from: Optional[Tuple[str, str]] = None
        self._sender: Optional[Tuple[str, str]] = None
        self._reply_to: Optional[Tuple[str, str]] = None
        self._return_path: Optional[str] = None
        self._to: List[Tuple[str, str]] = []
        self._cc: List[Tuple[str, str]] = []
        self._bcc: List[Tuple[str, str]] = []
        self._body: Optional[Tuple[ContentType, str]] = None
        self._alternatives: List[Tuple[ContentType, str]] = []
        self._attachments: List[Tuple[Attachment, bytes]] = []
        self._headers: List[Tuple[str, str]] = []
        self._date: Optional[str] = None
        self.priority = Priority.NORMAL

    # -- configuration ---------------------------------------------------------

    @_configuration
    def set_from(self, address: str) -> 'Email':
        self._from = parse_address(address)

    @_configuration
    def add_to(self, *addresses: str) -> 'Email':
        self._add_recipients(self._to, addresses)

    @_configuration
    def add_cc(self, *addresses: str) -> 'Email':
        self._add_recipients(self._cc, addresses)

    @_configuration
    def add_bcc(self, *addresses: str) -> 'Email':
        self._add_recipients(self._bcc, addresses)

    @_configuration
    def set_subject(self, subject: str) -> 'Email':
        self.subject = _header_value('Subject', subject)

    @_configuration
    def set_body(self, content_type: Union[ContentType, str], body: str) -> 'Email':
        self._body = (ContentType.parse(content_type), _text_value(body, self.charset))

    @_configuration
    def add_alternative(self, content_type: Union[ContentType, str], body: str) -> 'Email':
        self._alternatives.append((ContentType.parse(content_type), _text_value(body, self.charset)))

    @_configuration
    def set_sender(self, address: str) -> 'Email':
        self._sender = parse_address(address)

    @_configuration
    def set_reply_to(self, address: str) -> 'Email':
        self._reply_to = parse_address(address)

    @_configuration
    def set_return_path(self, address: str) -> 'Email':
        self._return_path = parse_address(address)[1]

    @_configuration
    def set_date(self, value: Union[datetime, str]) -> 'Email':
        self._date = _format_date(value)

    @_configuration
    def set_priority(self, priority: Union[Priority, str]) -> 'Email':
        self.priority = Priority.parse(priority)

    @_configuration
    def set_charset(self, charset: str) -> 'Email':
        try:
            codecs.lookup(charset)
            Charset(charset)
        except (LookupError, TypeError, ValueError) as e:
            raise ValidationError(f"Unknown charset: {charset!r}") from e

        for _, body in ([self._body] if self._body else []) + self._alternatives:
            _text_value(body, charset)
        self.charset = charset

    @_configuration
    def add_header(self, name: str, value: str) -> 'Email':
        if not isinstance(name, str) or not _HEADER_NAME_REGEX.match(name):
            raise ValidationError(f"Invalid header name: {name!r}")
        if name.lower() in RESERVED_HEADERS:
            raise ValidationError(f"Header '{name}' is managed by the builder")
        self._headers.append((name, _header_value(name, value)))

    @_configuration
    def attach(self, attachment: Attachment) -> 'Email':
        if not isinstance(attachment, Attachment):
            raise ValidationError(f"attach() expects an Attachment, got {type(attachment).__name__}")

        content = attachment.read()
        self._attachments.append((attachment, content))
        logger.debug(f"Attached {attachment.filename} ({len(content)} bytes, inline={attachment.inline})")

    def _add_recipients(self, target: List[Tuple[str, str]], addresses) -> None:
        if not addresses:
            raise ValidationError("At least one recipient address is required")

        parsed = [parse_address(address) for address in addresses]
        known = {address.lower() for _, address in target}
        for name, address in parsed:
            if address.lower() not in known:
                known.add(address.lower())
                target.append((name, address))

    # -- inspection ------------------------------------------------------------

    def get_error(self) -> Optional[MailError]:
        """Return the first recorded builder error, or None."""
        return self.error

    def get_from(self) -> Optional[str]:
        if self._from is None:
            return None
        return formataddr(self._from)

    def get_recipients(self) -> List[str]:
        """Envelope recipients: To, Cc then Bcc, without duplicates."""
        recipients: List[str] = []
        seen = set()
        for _, address in self._to + self._cc + self._bcc:
            if address.lower() not in seen:
                seen.add(address.lower())
                recipients.append(address)
        return recipients

    def get_envelope_sender(self) -> Optional[str]:
        if self._return_path:
            return self._return_path
        if self._sender is not None:
            return self._sender[1]
        if self._from is not None:
            return self._from[1]
        return None

    # -- serialization ---------------------------------------------------------

    def build(self) -> WireMessage:
        """
        Serialize headers and the MIME tree into a wire-ready message.

        Returns:
            WireMessage: Payload plus envelope sender and recipients

        Raises:
            BuildError: If the builder holds an error, or sender or
                recipients are missing
        """
        if self.error is not None:
            raise BuildError(f"Email has an unresolved error: {self.error}") from self.error

        if self._from is None:
            raise BuildError("No sender address set; call set_from() first")

        recipients = self.get_recipients()
        if not recipients:
            raise BuildError("At least one recipient (To, Cc or Bcc) is required")

        try:
            message = self._build_tree()
        except UnicodeError as e:
            raise BuildError(f"Message body cannot be encoded as {self.charset}: {e}") from e
        message_id = make_msgid(domain=self._from[1].rsplit('@', 1)[1])
        self._set_headers(message, message_id)

        data = message.as_bytes(policy=message.policy.clone(linesep='\r\n'))
        logger.debug(f"Built message {message_id} ({len(data)} bytes) for {len(recipients)} recipients")

        return WireMessage(
            envelope_from=self.get_envelope_sender(),
            recipients=tuple(recipients),
            data=data,
            message_id=message_id,
        )

    def get_message(self) -> str:
        """Return the built message as text."""
        return self.build().as_string()

    def send(self, client: SMTPClient) -> str:
        """
        Build the message and send it over ``client``.

        When the client was not opened with keep_alive, it is closed after
        the attempt: one message per connection.

        Args:
            client: A READY SMTPClient

        Returns:
            str: The Message-ID of the sent message

        Raises:
            BuildError: If the message cannot be built
            SendError: If transmission fails
            ClosedConnectionError: If the client is already closed
        """
        wire_message = self.build()
        try:
            client.send(wire_message)
        finally:
            if not client.config.keep_alive:
                client.close()
        return wire_message.message_id

    def _set_headers(self, message: MIMEBase, message_id: str) -> None:
        message['From'] = self._format(self._from)
        if self._to:
            message['To'] = ', '.join(self._format(a) for a in self._to)
        if self._cc:
            message['Cc'] = ', '.join(self._format(a) for a in self._cc)
        # Bcc recipients only travel in the envelope
        message['Subject'] = self.subject
        message['Date'] = self._date or formatdate(localtime=True)
        message['Message-ID'] = message_id
        if self._reply_to is not None:
            message['Reply-To'] = self._format(self._reply_to)
        if self._return_path:
            message['Return-Path'] = f'<{self._return_path}>'
        if self._sender is not None:
            message['Sender'] = self._format(self._sender)
        for name, value in self.priority.headers():
            message[name] = value
        message['X-Mailer'] = MAILER_NAME
        for name, value in self._headers:
            message[name] = value

    def _format(self, address: Tuple[str, str]) -> str:
        return formataddr(address, charset=self.charset)

    def _text_part(self, content_type: ContentType, body: str) -> MIMEText:
        charset = Charset(self.charset)
        # Quoted-printable keeps mostly-ASCII bodies readable on the wire
        charset.body_encoding = QP
        return MIMEText(body, content_type.subtype, charset)

    def _build_tree(self) -> MIMEBase:
        bodies = []
        if self._body is not None:
            bodies.append(self._body)
        bodies.extend(self._alternatives)
        if not bodies:
            bodies.append((ContentType.TEXT_PLAIN, ''))

        # Least preferred first, so plain text leads the alternatives
        bodies.sort(key=lambda item: item[0] is not ContentType.TEXT_PLAIN)
        parts = [self._text_part(content_type, body) for content_type, body in bodies]

        if len(parts) == 1:
            content = parts[0]
        else:
            content = MIMEMultipart('alternative')
            for part in parts:
                content.attach(part)

        inline = [(a, data) for a, data in self._attachments if a.inline]
        regular = [(a, data) for a, data in self._attachments if not a.inline]

        if inline:
            related = MIMEMultipart('related')
            related.attach(content)
            for attachment, data in inline:
                related.attach(self._attachment_part(attachment, data))
            content = related

        if regular:
            mixed = MIMEMultipart('mixed')
            mixed.attach(content)
            for attachment, data in regular:
                mixed.attach(self._attachment_part(attachment, data))
            content = mixed

        return content

    def _attachment_part(self, attachment: Attachment, data: bytes) -> MIMEBase:
        mime_type = attachment.mime_type or detect_mime_type(attachment.filename, data)
        main_type, sub_type = mime_type.split('/', 1)

        part = MIMEBase(main_type, sub_type, name=attachment.filename)
        part.set_payload(data)
        encoders.encode_base64(part)

        if attachment.inline:
            part.add_header('Content-Disposition', 'inline', filename=attachment.filename)
            part.add_header('Content-ID', f'<{attachment.filename}>')
        else:
            part.add_header('Content-Disposition', 'attachment', filename=attachment.filename)

        return part


def new_message(charset: str = 'utf-8') -> Email:
    """Create an empty Email builder."""
    return Email(charset=charset)


def _header_value(name: str, value) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    if '\r' in value or '\n' in value:
        raise ValidationError(f"{name} must not contain line breaks")
    return value


def _text_value(body, charset: str) -> str:
    if not isinstance(body, str):
        raise ValidationError("Body must be a string")
    try:
        body.encode(Charset(charset).output_codec or 'us-ascii')
    except UnicodeEncodeError as e:
        raise ValidationError(f"Body cannot be encoded as {charset}: {e}") from e
    return body


def _format_date(value: Union[datetime, str]) -> str:
    """
    Render a Date header value.

    Strings use the ``YYYY-MM-DD HH:MM:SS [ZONE]`` layout, where ZONE is a
    numeric offset such as ``-0500`` or a common abbreviation such as
    ``CDT``. Values without a zone are taken as local time.
    """
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        match = _DATE_REGEX.match(value.strip())
        if not match:
            raise ValidationError(f"Invalid date: {value!r}. Expected 'YYYY-MM-DD HH:MM:SS [ZONE]'")

        stamp = match.group('stamp').replace('T', ' ')
        layout = '%Y-%m-%d %H:%M:%S' if stamp.count(':') == 2 else '%Y-%m-%d %H:%M'
        try:
            moment = datetime.strptime(stamp, layout)
        except ValueError as e:
            raise ValidationError(f"Invalid date: {value!r}: {e}") from e

        zone = match.group('zone')
        if zone:
            moment = moment.replace(tzinfo=_parse_zone(zone))
    else:
        raise ValidationError(f"Date must be a datetime or string, got {type(value).__name__}")

    if moment.tzinfo is None:
        moment = moment.astimezone()
    return format_datetime(moment)


def _parse_zone(zone: str) -> timezone:
    if zone[0] in '+-':
        sign = -1 if zone[0] == '-' else 1
        hours, minutes = int(zone[1:3]), int(zone[3:5])
        if hours > 23 or minutes > 59:
            raise ValidationError(f"Invalid timezone offset: {zone}")
        return timezone(sign * timedelta(hours=hours, minutes=minutes))

    offset = _ZONE_OFFSETS.get(zone.upper())
    if offset is None:
        raise ValidationError(f"Unknown timezone abbreviation: {zone}")
    return timezone(timedelta(hours=offset), zone.upper())

