# =============================================================================
# MIME Decoder
# =============================================================================
# Reconstructs readable headers and bodies from raw protocol bytes without a
# full MIME library.
#
# Key responsibilities:
#   - RFC 2047 encoded-words in headers (=?charset?Q?...?= and =?charset?B?...?=)
#   - Header block scan (From, To, Subject, Date, Message-ID)
#   - Body split: single part or multipart/* (recursively), with
#     quoted-printable / base64 transfer decoding and charset decoding
#   - List-view previews
#
# Design notes:
#   - Every public function is pure and never raises. Header or body damage
#     degrades what the user sees (raw text, "now" for a date) but must never
#     stop an otherwise-good message from being delivered.
#   - Unknown charsets pass through byte-for-byte (decoded as latin-1).
#   - Raw bytes are carried around as latin-1 text so every byte survives
#     until the part's declared charset is known.
# =============================================================================

import base64
import binascii
import email.utils
import logging
import quopri
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from mailsync.core import Address, AttachmentMeta

logger = logging.getLogger(__name__)


# Placeholder text used when a body has no readable text part
NO_CONTENT = "No content"

# Defaults for missing headers
UNKNOWN_SENDER = "Unknown"
NO_SUBJECT = "No Subject"

# Preview length for list views
PREVIEW_LENGTH = 150

# Multipart nesting guard
MAX_PART_DEPTH = 16

_ENCODED_WORD = re.compile(r"=\?([^?\s]+)\?([QqBb])\?([^?]*)\?=")
_BETWEEN_ENCODED_WORDS = re.compile(r"(\?=)\s+(?==\?)")
_QP_ESCAPE = re.compile(rb"=([0-9A-Fa-f]{2})")
_WHITESPACE = re.compile(r"\s+")
_TAG = re.compile(r"<[^>]*>")
_PARAM = re.compile(r'([\w*.-]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^;\s]+)')
_ANGLE_ADDRESS = re.compile(r"^(.*?)\s*<([^>]*)>\s*$")


@dataclass
class ParsedHeader:
    """Fields pulled from a raw header block."""
    sender: str = UNKNOWN_SENDER
    to: str = ""
    subject: str = NO_SUBJECT
    date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message_id: str = ""


@dataclass
class ParsedAttachment:
    """A non-text part found while walking a body."""
    filename: str
    content_type: str
    content: bytes = b""

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    def meta(self) -> AttachmentMeta:
        return AttachmentMeta(
            filename=self.filename,
            size_bytes=self.size_bytes,
            content_type=self.content_type,
        )


@dataclass
class ParsedBody:
    """Decoded text/html bodies plus attachments, in body order."""
    text_content: str = NO_CONTENT
    html_content: str | None = None
    attachments: list[ParsedAttachment] = field(default_factory=list)


# =============================================================================
# Headers
# =============================================================================

def decode_header_word(value: str) -> str:
    """
    Decode RFC 2047 encoded-words in a header value.

    Whitespace between two adjacent encoded-words is dropped, each word is
    decoded on its own, and runs of whitespace are collapsed.

    Args:
        value: Raw header value, possibly containing encoded-words.

    Returns:
        The decoded text. Words that fail to decode are left as they were.

    Example:
        >>> decode_header_word("=?UTF-8?Q?Caf=C3=A9?=")
        'Café'
    """
    if not value:
        return ""
    if "=?" not in value:
        return _WHITESPACE.sub(" ", value).strip()

    joined = _BETWEEN_ENCODED_WORDS.sub(r"\1", value)
    decoded = _ENCODED_WORD.sub(_decode_encoded_word, joined)
    return _WHITESPACE.sub(" ", decoded).strip()


def _decode_encoded_word(match: re.Match) -> str:
    charset, encoding, payload = match.groups()
    # RFC 2231 allows a language suffix: utf-8*en
    charset = charset.split("*", 1)[0]
    try:
        if encoding.upper() == "Q":
            raw = payload.replace("_", " ").encode("latin-1", errors="replace")
            data = _QP_ESCAPE.sub(lambda m: bytes([int(m.group(1), 16)]), raw)
        else:
            padded = payload + "=" * (-len(payload) % 4)
            data = base64.b64decode(padded)
    except (binascii.Error, ValueError) as e:
        logger.debug(f"Could not decode encoded-word {match.group(0)!r}: {e}")
        return match.group(0)
    return _decode_bytes(data, charset)


def _decode_bytes(data: bytes, charset: str | None) -> str:
    """Decode bytes via a declared charset, passing unknown charsets through."""
    try:
        return data.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return data.decode("latin-1")


def parse_header_block(raw: str | bytes) -> ParsedHeader:
    """
    Scan a raw header block for the fields a summary needs.

    Folded (continuation) lines are joined before matching. A missing or
    unparseable Date falls back to the current time.

    Args:
        raw: Header block as returned by a HEADER.FIELDS fetch.

    Returns:
        ParsedHeader with "Unknown" / "No Subject" defaults for missing values.
    """
    header = ParsedHeader()
    try:
        fields = _header_fields(_to_text(raw, "utf-8"))
    except Exception as e:
        logger.warning(f"Failed to scan header block: {e}")
        return header

    if fields.get("from"):
        header.sender = decode_header_word(fields["from"]) or UNKNOWN_SENDER
    if fields.get("to"):
        header.to = decode_header_word(fields["to"])
    if fields.get("subject"):
        header.subject = decode_header_word(fields["subject"]) or NO_SUBJECT
    if fields.get("message-id"):
        header.message_id = fields["message-id"].strip()
    if fields.get("date"):
        header.date = parse_date(fields["date"])

    return header


def parse_date(value: str) -> datetime:
    """Parse an RFC 5322 date into UTC, falling back to now."""
    try:
        parsed = email.utils.parsedate_to_datetime(value.strip())
    except (TypeError, ValueError, IndexError):
        parsed = None

    if parsed is None:
        logger.debug(f"Unparseable date {value!r}, using current time")
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_address(value: str) -> Address:
    """
    Split "Name <user@host>" into an Address.

    Bare addresses get the address as their name; values without an "@"
    (like the "Unknown" default) get an empty address.
    """
    value = (value or "").strip()
    if not value:
        return Address(name=UNKNOWN_SENDER, address="")

    match = _ANGLE_ADDRESS.match(value)
    if match:
        name = match.group(1).strip().strip('"').strip()
        address = match.group(2).strip()
        return Address(name=name or address, address=address)

    if "@" in value:
        return Address(name=value, address=value)
    return Address(name=value, address="")


def _header_fields(text: str) -> dict[str, str]:
    """Unfold a header block into a lower-cased name -> value dict (first wins)."""
    fields: dict[str, str] = {}
    current: str | None = None

    for line in text.split("\n"):
        if not line.strip():
            if fields:
                break  # end of the header block
            continue
        if line[0] in " \t" and current is not None:
            fields[current] += " " + line.strip()
            continue
        name, sep, value = line.partition(":")
        if not sep:
            current = None
            continue
        name = name.strip().lower()
        if name in fields:
            current = None  # ignore repeats, keep the first occurrence
            continue
        fields[name] = value.strip()
        current = name

    return fields


# =============================================================================
# Bodies
# =============================================================================

def parse_body(raw: str | bytes) -> ParsedBody:
    """
    Decode a full RFC 822 message into text, HTML and attachments.

    Headers and body are split on the first blank line. multipart/* bodies
    are split on their boundary and walked recursively: text/plain fills
    text_content, text/html fills html_content, anything else (or anything
    with an "attachment" disposition) becomes a ParsedAttachment.

    Args:
        raw: The complete message as fetched with BODY[].

    Returns:
        ParsedBody. text_content is "No content" when no text was found;
        a lone text/html body fills both fields.
    """
    text = _to_text(raw, "latin-1")
    header_block, body = _split_headers(text)

    if header_block is None:
        return ParsedBody(text_content=_bytes_to_text(body, None).strip() or NO_CONTENT)

    collected = _Collector()
    try:
        _walk(_header_fields(header_block), body, collected, 0)
    except Exception as e:
        logger.warning(f"Error parsing message body: {e}")
        # Fall back to the undecoded body
        if not collected.text and not collected.html:
            collected.text = _bytes_to_text(body, None)

    text_content = (collected.text or "").strip()
    html_content = (collected.html or "").strip() or None
    if not text_content and html_content and collected.single_part:
        text_content = html_content

    return ParsedBody(
        text_content=text_content or NO_CONTENT,
        html_content=html_content,
        attachments=collected.attachments,
    )


@dataclass
class _Collector:
    text: str | None = None
    html: str | None = None
    attachments: list[ParsedAttachment] = field(default_factory=list)
    single_part: bool = True


def _walk(headers: dict[str, str], body: str, out: _Collector, depth: int) -> None:
    content_type, params = _content_type(headers)

    if content_type.startswith("multipart/"):
        out.single_part = False
        boundary = params.get("boundary")
        if not boundary or depth >= MAX_PART_DEPTH:
            # No usable boundary: show the body as-is
            if out.text is None:
                out.text = _bytes_to_text(body, None)
            return
        for part in _split_multipart(body, boundary):
            part_headers, part_body = _split_headers(part)
            if part_headers is None:
                continue
            _walk(_header_fields(part_headers), part_body, out, depth + 1)
        return

    encoding = headers.get("content-transfer-encoding", "7bit").strip().lower()
    disposition, disposition_params = _disposition(headers.get("content-disposition", ""))
    payload = _decode_transfer(body, encoding)

    if disposition != "attachment":
        if content_type == "text/plain" and out.text is None:
            out.text = _decode_bytes(payload, params.get("charset"))
            return
        if content_type == "text/html" and out.html is None:
            out.html = _decode_bytes(payload, params.get("charset"))
            return
        if content_type in ("text/plain", "text/html"):
            return  # a later alternative of a kind we already have

    filename = disposition_params.get("filename") or params.get("name") or ""
    filename = decode_header_word(filename)
    if not filename:
        filename = f"attachment.{content_type.split('/', 1)[-1] or 'bin'}"

    out.attachments.append(ParsedAttachment(
        filename=filename,
        content_type=content_type,
        content=payload,
    ))


def _split_headers(text: str) -> tuple[str | None, str]:
    """Split on the first blank line. Returns (None, text) if there is none."""
    if text.startswith("\n"):
        return "", text[1:]
    index = text.find("\n\n")
    if index < 0:
        return None, text
    return text[:index], text[index + 2:]


def _split_multipart(body: str, boundary: str) -> list[str]:
    """Split a multipart body into its parts, dropping preamble and epilogue."""
    delimiter = f"--{boundary}"
    closing = f"{delimiter}--"
    parts: list[str] = []
    current: list[str] | None = None

    for line in body.split("\n"):
        stripped = line.rstrip()
        if stripped == closing:
            if current is not None:
                parts.append("\n".join(current))
            current = None
            break
        if stripped == delimiter:
            if current is not None:
                parts.append("\n".join(current))
            current = []
            continue
        if current is not None:
            current.append(line)

    if current is not None:
        # Missing closing delimiter: keep what we have
        parts.append("\n".join(current))

    return [part for part in parts if part.strip()]


def _content_type(headers: dict[str, str]) -> tuple[str, dict[str, str]]:
    value = headers.get("content-type", "")
    if not value:
        return "text/plain", {}
    kind, _, rest = value.partition(";")
    return kind.strip().lower() or "text/plain", _parse_params(rest)


def _disposition(value: str) -> tuple[str, dict[str, str]]:
    kind, _, rest = value.partition(";")
    return kind.strip().lower(), _parse_params(rest)


def _parse_params(text: str) -> dict[str, str]:
    params = {}
    for key, val in _PARAM.findall(text):
        if val.startswith('"') and val.endswith('"'):
            val = val[1:-1].replace('\\"', '"')
        key = key.lower().rstrip("*")
        params.setdefault(key, val)
    return params


def _decode_transfer(body: str, encoding: str) -> bytes:
    """Undo a Content-Transfer-Encoding, returning raw bytes."""
    raw = _to_bytes(body)
    if encoding == "quoted-printable":
        return quopri.decodestring(raw)
    if encoding == "base64":
        compact = re.sub(rb"\s+", b"", raw)
        try:
            return base64.b64decode(compact + b"=" * (-len(compact) % 4))
        except (binascii.Error, ValueError):
            logger.debug("Base64 body failed to decode, keeping it as-is")
            return raw
    return raw


def _to_text(raw: str | bytes, charset: str) -> str:
    if isinstance(raw, (bytes, bytearray)):
        text = bytes(raw).decode(charset, errors="replace")
    else:
        text = raw or ""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _to_bytes(text: str) -> bytes:
    try:
        return text.encode("latin-1")
    except UnicodeEncodeError:
        # Already-decoded text: keep it as UTF-8
        return text.encode("utf-8")


def _bytes_to_text(text: str, charset: str | None) -> str:
    return _decode_bytes(_to_bytes(text), charset)


# =============================================================================
# Previews
# =============================================================================

def generate_preview(content: str, length: int = PREVIEW_LENGTH) -> str:
    """
    Make a one-line preview: tags stripped, whitespace collapsed, truncated.

    Example:
        >>> generate_preview("<p>Hello   <b>there</b></p>")
        'Hello there'
    """
    if not content:
        return ""
    text = _WHITESPACE.sub(" ", _TAG.sub("", content)).strip()
    if len(text) > length:
        return text[:length] + "..."
    return text
