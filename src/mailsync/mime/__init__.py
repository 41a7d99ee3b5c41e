# =============================================================================
# MIME Module
# =============================================================================
# Pure decoding helpers: no I/O, no state, never raise.
#
#   - decoder: RFC 2047 headers, header blocks, bodies, previews
#   - structure: BODYSTRUCTURE parsing and attachment detection
# =============================================================================

from mailsync.mime.decoder import (
    NO_CONTENT,
    NO_SUBJECT,
    UNKNOWN_SENDER,
    ParsedAttachment,
    ParsedBody,
    ParsedHeader,
    decode_header_word,
    generate_preview,
    parse_address,
    parse_body,
    parse_date,
    parse_header_block,
)
from mailsync.mime.structure import BodyPart, has_attachments, parse_bodystructure

__all__ = [
    "NO_CONTENT",
    "NO_SUBJECT",
    "UNKNOWN_SENDER",
    "ParsedAttachment",
    "ParsedBody",
    "ParsedHeader",
    "decode_header_word",
    "generate_preview",
    "parse_address",
    "parse_body",
    "parse_date",
    "parse_header_block",
    "BodyPart",
    "has_attachments",
    "parse_bodystructure",
]
