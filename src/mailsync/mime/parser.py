# =============================================================================
# MIME Parser
# =============================================================================
# Turns a raw RFC 822 message into the structured fields the downloader
# stores. The sync core treats this as a black box: it either returns a
# ParsedMessage or raises MessageParseError, nothing in between.
#
# Parsing is CPU-bound and synchronous; the downloader runs it through
# asyncio.to_thread so large messages don't stall the event loop.
# =============================================================================

import email
import email.errors
import email.header
import email.utils
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import Message as EmailMessage

from mailsync.core import Attachment

# Set up logging for this module
logger = logging.getLogger(__name__)


class MessageParseError(Exception):
    """Raised when a raw message can't be parsed into structured fields."""
    pass


@dataclass
class ParsedMessage:
    """
    Structured fields extracted from a raw message.

    Missing headers are left empty (or None for date); callers decide on
    defaults.
    """
    sender_name: str = ""
    sender: str = ""
    subject: str = ""
    body_text: str = ""
    body_html: str | None = None
    date: datetime | None = None
    attachments: list[Attachment] = field(default_factory=list)


def decode_header(value: str | None) -> str:
    """Decode an RFC 2047 encoded header value."""
    if not value:
        return ""
    try:
        decoded_parts = email.header.decode_header(str(value))
    except email.errors.HeaderParseError:
        return str(value)

    result = ""
    for part, charset in decoded_parts:
        if isinstance(part, bytes):
            try:
                result += part.decode(charset or "utf-8", errors="replace")
            except LookupError:
                # Unknown charset label
                result += part.decode("utf-8", errors="replace")
        else:
            result += part
    return result


def _parse_date(value: str | None) -> datetime | None:
    """Parse a Date header and normalize to UTC for consistent sorting."""
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable Date header: {value!r}")
        return None
    if parsed.tzinfo is None:
        # Assume UTC if no timezone
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _decode_part(part: EmailMessage) -> str:
    """Decode a message part to string."""
    payload = part.get_payload(decode=True)
    if isinstance(payload, bytes):
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            return payload.decode("utf-8", errors="replace")
    return str(payload) if payload else ""


def _extract_attachment(part: EmailMessage) -> Attachment | None:
    """Extract an attachment from a message part."""
    filename = part.get_filename()
    if not filename:
        # Generate filename from content type
        content_type = part.get_content_type()
        ext = content_type.split("/")[-1] if "/" in content_type else "bin"
        filename = f"attachment.{ext}"

    payload = part.get_payload(decode=True)
    if not isinstance(payload, bytes):
        return None

    return Attachment(
        filename=decode_header(filename),
        content_type=part.get_content_type(),
        size=len(payload),
        data=payload,
    )


def _parse_body(msg: EmailMessage) -> tuple[str, str | None, list[Attachment]]:
    """
    Split a parsed message into text, HTML, and attachments.

    Returns:
        Tuple of (body_text, body_html, attachments).
    """
    body_text = ""
    body_html: str | None = None
    attachments: list[Attachment] = []

    if not msg.is_multipart():
        content_type = msg.get_content_type()
        if content_type == "text/html":
            body_html = _decode_part(msg)
        elif content_type.startswith("text/"):
            body_text = _decode_part(msg)
        else:
            # Single-part non-text message, e.g. a bare PDF
            att = _extract_attachment(msg)
            if att:
                attachments.append(att)
        return body_text, body_html, attachments

    for part in msg.walk():
        # Skip multipart containers
        if part.is_multipart():
            continue

        content_type = part.get_content_type()
        disposition = part.get_content_disposition()

        if disposition == "attachment":
            att = _extract_attachment(part)
            if att:
                attachments.append(att)
        elif content_type == "text/plain" and not body_text:
            body_text = _decode_part(part)
        elif content_type == "text/html" and body_html is None:
            body_html = _decode_part(part)
        elif not content_type.startswith("text/"):
            # Inline images and other inline binaries
            att = _extract_attachment(part)
            if att:
                attachments.append(att)

    return body_text, body_html, attachments


def parse_message(raw: bytes) -> ParsedMessage:
    """
    Parse a raw RFC 822 message.

    Args:
        raw: The full message source as fetched from the server.

    Returns:
        ParsedMessage with sender, subject, bodies, date and attachments.

    Raises:
        MessageParseError: If no header fields can be parsed or the
                           message can't be decoded.
    """
    if not raw:
        raise MessageParseError("Empty message source")

    try:
        msg = email.message_from_bytes(raw)
    except (TypeError, ValueError, UnicodeError) as e:
        raise MessageParseError(f"Cannot decode message: {e}") from e

    if not msg.keys():
        raise MessageParseError("Message has no parseable header fields")

    try:
        sender_name, sender = email.utils.parseaddr(decode_header(msg.get("From")))
        body_text, body_html, attachments = _parse_body(msg)
    except (TypeError, ValueError, UnicodeError, AssertionError) as e:
        raise MessageParseError(f"Cannot decode message: {e}") from e

    return ParsedMessage(
        sender_name=sender_name,
        sender=sender,
        subject=decode_header(msg.get("Subject")).strip(),
        body_text=body_text,
        body_html=body_html,
        date=_parse_date(msg.get("Date")),
        attachments=attachments,
    )
