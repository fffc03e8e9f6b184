"""Convert Gmail API message resources into MailItem cards."""

import base64
import logging
import re
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.utils import getaddresses, parsedate_to_datetime
from html.parser import HTMLParser
from typing import Any

from kanban_sync.storage.models import DEFAULT_MAILBOX, Attachment, EmailAddress, MailItem

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 150

# System labels that name a mailbox, most specific first.
_MAILBOX_LABELS = ("INBOX", "SENT", "DRAFT", "SPAM", "TRASH")

# Guard against pathological MIME trees.
_MAX_PART_DEPTH = 20


# ── HTML stripper ───────────────────────────────────────────────────────────────


class _HTMLStripper(HTMLParser):
    """Minimal HTMLParser subclass that collects visible text nodes."""

    _SKIP = {"style", "script"}

    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []
        self._skipping = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in self._SKIP:
            self._skipping += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIP and self._skipping:
            self._skipping -= 1

    def handle_data(self, data: str) -> None:
        if self._skipping:
            return
        text = data.strip()
        if text:
            self._parts.append(text)

    def get_text(self) -> str:
        return " ".join(self._parts)


def strip_html(text: str) -> str:
    """Return plain text from an HTML string, whitespace collapsed.

    If the input doesn't look like HTML it is returned with whitespace collapsed.
    """
    if "<" not in text:
        return " ".join(text.split())
    stripper = _HTMLStripper()
    try:
        stripper.feed(text)
        stripper.close()
    except Exception:  # noqa: BLE001
        return " ".join(text.split())
    return " ".join(stripper.get_text().split())


# ── Headers ────────────────────────────────────────────────────────────────────


def decode_mail_header(value: str) -> str:
    """Decode RFC 2047 encoded-words (``=?UTF-8?B?...?=``) into text.

    Headers Gmail has already decoded pass through unchanged; undecodable
    input is returned as-is.
    """
    if not value or "=?" not in value:
        return value
    try:
        return str(make_header(decode_header(value)))
    except (LookupError, UnicodeDecodeError, ValueError):
        logger.warning("Could not decode mail header %r", value)
        return value


def parse_address(value: str) -> EmailAddress:
    """Parse ``"Name" <addr>`` or a bare address. Bare addresses use the local part as name."""
    addresses = parse_address_list(value)
    return addresses[0] if addresses else EmailAddress(email="", name="")


def parse_address_list(value: str) -> list[EmailAddress]:
    if not value:
        return []
    result: list[EmailAddress] = []
    for name, addr in getaddresses([decode_mail_header(value)]):
        if not addr and not name:
            continue
        result.append(EmailAddress(email=addr, name=name or addr.split("@")[0]))
    return result


def _header_map(payload: dict[str, Any]) -> dict[str, str]:
    # Case-insensitive; the first occurrence of a header wins.
    headers: dict[str, str] = {}
    for h in payload.get("headers", []):
        name = str(h.get("name", "")).lower()
        if name and name not in headers:
            headers[name] = str(h.get("value", ""))
    return headers


# ── Body & attachments ─────────────────────────────────────────────────────────


def _decode_data(data: str) -> str:
    """Decode Gmail's base64url body data (padding optional)."""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        logger.warning("Could not decode base64 body part")
        return ""


def _find_part(parts: list[dict[str, Any]], mime_type: str, depth: int = 0) -> dict[str, Any] | None:
    if depth > _MAX_PART_DEPTH:
        return None
    for part in parts:
        if part.get("mimeType") == mime_type and part.get("body", {}).get("data"):
            return part
        nested = part.get("parts")
        if nested:
            found = _find_part(nested, mime_type, depth + 1)
            if found is not None:
                return found
    return None


def extract_body(payload: dict[str, Any]) -> str:
    """Return the message body as HTML.

    Prefers a text/html part; plain text is converted with ``<br>`` line breaks.
    """
    data = payload.get("body", {}).get("data")
    if data:
        text = _decode_data(data)
        if payload.get("mimeType") == "text/plain":
            return text.replace("\n", "<br>")
        return text

    parts = payload.get("parts") or []
    html_part = _find_part(parts, "text/html")
    if html_part is not None:
        return _decode_data(html_part["body"]["data"])
    text_part = _find_part(parts, "text/plain")
    if text_part is not None:
        return _decode_data(text_part["body"]["data"]).replace("\n", "<br>")
    return ""


def extract_attachments(payload: dict[str, Any]) -> list[Attachment]:
    attachments: list[Attachment] = []

    def walk(parts: list[dict[str, Any]], depth: int) -> None:
        if depth > _MAX_PART_DEPTH:
            return
        for part in parts:
            body = part.get("body", {})
            if part.get("filename") and body.get("attachmentId"):
                attachments.append(Attachment(
                    attachment_id=str(body["attachmentId"]),
                    filename=str(part["filename"]),
                    mime_type=str(part.get("mimeType") or "application/octet-stream"),
                    size=int(body.get("size") or 0),
                ))
            if part.get("parts"):
                walk(part["parts"], depth + 1)

    walk(payload.get("parts") or [], 0)
    return attachments


# ── Message ────────────────────────────────────────────────────────────────────


def mailbox_hint_for(labels: frozenset[str]) -> str:
    """Pick the raw mailbox a message lives in from its system labels."""
    for label in _MAILBOX_LABELS:
        if label in labels:
            return label
    return DEFAULT_MAILBOX


def _timestamp(headers: dict[str, str], internal_date: str | None) -> datetime:
    date_header = headers.get("date")
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header %r; using internalDate", date_header)
    try:
        return datetime.fromtimestamp(int(internal_date or "0") / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return datetime.fromtimestamp(0, tz=timezone.utc)


def parse_message(message: dict[str, Any], user_id: str) -> MailItem:
    """Map a ``users.messages.get(format="full")`` resource to a MailItem.

    The returned item's ``workflow_status`` is the raw mailbox hint; the sync
    orchestrator replaces it with the mapped status before persisting.
    """
    payload = message.get("payload") or {}
    headers = _header_map(payload)
    labels = frozenset(str(label) for label in message.get("labelIds") or [])
    hint = mailbox_hint_for(labels)
    body = extract_body(payload)

    return MailItem(
        provider_message_id=str(message["id"]),
        user_id=user_id,
        thread_id=str(message.get("threadId") or ""),
        subject=decode_mail_header(headers.get("subject", "")),
        sender=parse_address(headers.get("from", "")),
        recipients=tuple(parse_address_list(headers.get("to", ""))),
        cc=tuple(parse_address_list(headers.get("cc", ""))),
        body=body,
        preview=strip_html(body)[:PREVIEW_CHARS] if body else str(message.get("snippet") or ""),
        timestamp_utc=_timestamp(headers, message.get("internalDate")),
        labels=labels,
        workflow_status=hint,
        mailbox_hint=hint,
        is_read="UNREAD" not in labels,
        is_starred="STARRED" in labels,
        attachments=tuple(extract_attachments(payload)),
    )


_HISTORY_ID_RE = re.compile(r"^\d+$")


def parse_history_id(value: object) -> int:
    """Parse a Gmail historyId (decimal string or int) into an int.

    Raises:
        ValueError: for anything that is not a non-negative decimal integer.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid historyId {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"invalid historyId {value!r}")
        return value
    text = str(value).strip()
    if not _HISTORY_ID_RE.match(text):
        raise ValueError(f"invalid historyId {value!r}")
    return int(text)
