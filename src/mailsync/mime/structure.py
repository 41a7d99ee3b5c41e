# =============================================================================
# BODYSTRUCTURE Parsing
# =============================================================================
# Turns the parenthesised BODYSTRUCTURE item of a FETCH response into a tree
# of BodyPart objects, and answers "does this message have attachments?"
# without downloading the body.
#
# A single part looks like:
#   ("TEXT" "PLAIN" ("CHARSET" "UTF-8") NIL NIL "7BIT" 1234 56 NIL NIL NIL NIL)
# A multipart is a run of parts followed by the subtype and extension data:
#   (("TEXT" "PLAIN" ...)("APPLICATION" "PDF" ...) "MIXED" ("BOUNDARY" "x") NIL)
#
# Like the rest of the decoder, nothing in here raises: unparseable input
# yields None and has_attachments(None) is False.
# =============================================================================

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Content types that never count as attachments on their own
INLINE_CONTENT_TYPES = frozenset({
    "text/plain",
    "text/html",
    "multipart/alternative",
    "multipart/related",
})

# Major types that look like attachments when outside the list above
ATTACHMENT_MAJOR_TYPES = ("application", "image", "audio", "video")

# Guard against hostile nesting
MAX_DEPTH = 32


@dataclass
class BodyPart:
    """
    One node of a message's MIME structure.

    Attributes:
        type: Major type, lower-cased ("text", "multipart", "application").
        subtype: Minor type, lower-cased ("plain", "mixed", "pdf").
        params: Content-Type parameters (charset, name, boundary...).
        disposition: "attachment", "inline" or None.
        disposition_params: Content-Disposition parameters (filename...).
        size: Encoded size in bytes for leaf parts, 0 for multiparts.
        parts: Child parts for multipart and message/rfc822 nodes.
    """
    type: str
    subtype: str
    params: dict[str, str] = field(default_factory=dict)
    disposition: str | None = None
    disposition_params: dict[str, str] = field(default_factory=dict)
    size: int = 0
    parts: list["BodyPart"] = field(default_factory=list)

    @property
    def content_type(self) -> str:
        return f"{self.type}/{self.subtype}"

    def walk(self):
        """Yield this part and every descendant, depth first."""
        stack = [self]
        while stack:
            part = stack.pop()
            yield part
            stack.extend(reversed(part.parts))


def parse_bodystructure(text: str) -> BodyPart | None:
    """
    Parse a BODYSTRUCTURE value.

    Args:
        text: The parenthesised structure, starting at its opening "(".

    Returns:
        The root BodyPart, or None if the text could not be parsed.
    """
    if not text:
        return None
    start = text.find("(")
    if start < 0:
        return None
    try:
        items, _ = _parse_list(text, start, 0)
        return _build_part(items, 0)
    except (ValueError, IndexError, RecursionError) as e:
        logger.debug(f"Unparseable BODYSTRUCTURE ({e}): {text[:120]!r}")
        return None


def has_attachments(structure: BodyPart | None) -> bool:
    """
    Decide whether a structure tree contains an attachment.

    A part counts when its disposition is "attachment", or when its type is
    outside INLINE_CONTENT_TYPES and it either carries a filename/name
    parameter or is an application/image/audio/video part.
    """
    if structure is None:
        return False

    for part in structure.walk():
        if part.disposition == "attachment":
            return True

        if part.content_type in INLINE_CONTENT_TYPES:
            continue

        if part.disposition_params.get("filename") or part.params.get("name"):
            return True

        if part.type in ATTACHMENT_MAJOR_TYPES:
            return True

    return False


# =============================================================================
# S-expression reader
# =============================================================================

def _parse_list(text: str, pos: int, depth: int) -> tuple[list[Any], int]:
    """Read a parenthesised list starting at text[pos] == "("."""
    if depth > MAX_DEPTH:
        raise ValueError("structure nested too deeply")

    items: list[Any] = []
    pos += 1
    length = len(text)

    while pos < length:
        ch = text[pos]

        if ch == ")":
            return items, pos + 1
        if ch.isspace():
            pos += 1
        elif ch == "(":
            item, pos = _parse_list(text, pos, depth + 1)
            items.append(item)
        elif ch == '"':
            item, pos = _parse_quoted(text, pos)
            items.append(item)
        elif ch == "{":
            item, pos = _parse_literal(text, pos)
            items.append(item)
        else:
            end = pos
            while end < length and not text[end].isspace() and text[end] not in "()":
                end += 1
            atom = text[pos:end]
            items.append(None if atom.upper() == "NIL" else atom)
            pos = end

    raise ValueError("unbalanced parentheses")


def _parse_quoted(text: str, pos: int) -> tuple[str, int]:
    """Read a quoted string starting at text[pos] == '"'."""
    out = []
    pos += 1
    while pos < len(text):
        ch = text[pos]
        if ch == "\\" and pos + 1 < len(text):
            out.append(text[pos + 1])
            pos += 2
        elif ch == '"':
            return "".join(out), pos + 1
        else:
            out.append(ch)
            pos += 1
    raise ValueError("unterminated string")


def _parse_literal(text: str, pos: int) -> tuple[str, int]:
    """Read a {N} literal that was inlined into the response text."""
    close = text.index("}", pos)
    size = int(text[pos + 1:close])
    start = close + 1
    while start < len(text) and text[start] in "\r\n":
        start += 1
    return text[start:start + size], start + size


# =============================================================================
# Tree building
# =============================================================================

def _build_part(items: list[Any], depth: int) -> BodyPart:
    if depth > MAX_DEPTH:
        raise ValueError("structure nested too deeply")

    if items and isinstance(items[0], list):
        return _build_multipart(items, depth)

    major = (items[0] or "application").lower()
    minor = (items[1] or "octet-stream").lower()
    params = _params(items[2] if len(items) > 2 else None)

    size = 0
    if len(items) > 6 and isinstance(items[6], str) and items[6].isdigit():
        size = int(items[6])

    disposition, disposition_params = _find_disposition(items[7:])

    parts: list[BodyPart] = []
    # message/rfc822 carries envelope, body structure and line count
    if major == "message" and minor == "rfc822" and len(items) > 8:
        if isinstance(items[8], list):
            parts.append(_build_part(items[8], depth + 1))

    return BodyPart(
        type=major,
        subtype=minor,
        params=params,
        disposition=disposition,
        disposition_params=disposition_params,
        size=size,
        parts=parts,
    )


def _build_multipart(items: list[Any], depth: int) -> BodyPart:
    parts = []
    index = 0
    while index < len(items) and isinstance(items[index], list):
        parts.append(_build_part(items[index], depth + 1))
        index += 1

    subtype = "mixed"
    if index < len(items) and isinstance(items[index], str):
        subtype = items[index].lower()
    extension = items[index + 1:]

    params = _params(extension[0]) if extension and isinstance(extension[0], list) else {}
    disposition, disposition_params = _find_disposition(extension[1:])

    return BodyPart(
        type="multipart",
        subtype=subtype,
        params=params,
        disposition=disposition,
        disposition_params=disposition_params,
        parts=parts,
    )


def _params(value: Any) -> dict[str, str]:
    """Turn ("KEY" "value" "KEY2" "value2") into a dict with lower-case keys."""
    if not isinstance(value, list):
        return {}
    params = {}
    for i in range(0, len(value) - 1, 2):
        key, val = value[i], value[i + 1]
        if isinstance(key, str) and isinstance(val, str):
            params[key.lower()] = val
    return params


def _find_disposition(extension: list[Any]) -> tuple[str | None, dict[str, str]]:
    """
    Locate the ("ATTACHMENT" (...)) disposition pair in extension data.

    Its position depends on the part type (text parts carry a line count,
    message parts an envelope), so look for its shape instead of an index.
    """
    for item in extension:
        if not isinstance(item, list) or not item:
            continue
        head = item[0]
        if not isinstance(head, str) or head.lower() not in ("attachment", "inline"):
            continue
        tail = item[1] if len(item) > 1 else None
        if tail is None or isinstance(tail, list):
            return head.lower(), _params(tail)
    return None, {}
