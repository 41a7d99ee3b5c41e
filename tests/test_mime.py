# =============================================================================
# MIME Decoding Tests
# =============================================================================

from datetime import datetime, timezone

import pytest

from mailsync.mime import (
    NO_CONTENT,
    NO_SUBJECT,
    UNKNOWN_SENDER,
    decode_header_word,
    generate_preview,
    has_attachments,
    parse_address,
    parse_body,
    parse_bodystructure,
    parse_date,
    parse_header_block,
)

from conftest import ATTACHMENT_STRUCTURE, PLAIN_STRUCTURE, multipart_message, plain_message


# =============================================================================
# Headers
# =============================================================================

class TestDecodeHeaderWord:
    def test_quoted_printable(self):
        assert decode_header_word("=?UTF-8?Q?Caf=C3=A9?=") == "Café"

    def test_base64(self):
        assert decode_header_word("=?UTF-8?B?4pml?=") == "♥"

    def test_underscore_is_space_in_q(self):
        assert decode_header_word("=?utf-8?q?Hello_World?=") == "Hello World"

    def test_adjacent_words_are_joined(self):
        value = "=?UTF-8?Q?Caf=C3=A9?= =?UTF-8?Q?_au_lait?="
        assert decode_header_word(value) == "Café au lait"

    def test_mixed_plain_and_encoded(self):
        assert decode_header_word("Re: =?UTF-8?Q?Caf=C3=A9?= plans") == "Re: Café plans"

    def test_unknown_charset_passes_bytes_through(self):
        assert decode_header_word("=?x-nonsense?Q?abc?=") == "abc"

    def test_language_suffix_is_ignored(self):
        assert decode_header_word("=?UTF-8*en?Q?Caf=C3=A9?=") == "Café"

    def test_plain_text_whitespace_collapsed(self):
        assert decode_header_word("  Hello \t  there ") == "Hello there"

    def test_empty(self):
        assert decode_header_word("") == ""


def test_parse_header_block_unfolds_and_decodes():
    raw = (
        "From: =?UTF-8?Q?Ren=C3=A9?= <rene@example.com>\r\n"
        "Subject: A long\r\n"
        " folded subject\r\n"
        "Date: Fri, 01 Mar 2024 12:00:00 +0100\r\n"
        "Message-ID: <abc@example.com>\r\n"
        "Subject: second subject is ignored\r\n"
    )
    header = parse_header_block(raw)

    assert header.sender == "René <rene@example.com>"
    assert header.subject == "A long folded subject"
    assert header.date == datetime(2024, 3, 1, 11, 0, tzinfo=timezone.utc)
    assert header.message_id == "<abc@example.com>"


def test_parse_header_block_defaults():
    header = parse_header_block(b"X-Other: 1\r\n")
    assert header.sender == UNKNOWN_SENDER
    assert header.subject == NO_SUBJECT


def test_parse_date_falls_back_to_now():
    before = datetime.now(timezone.utc)
    assert parse_date("not a date") >= before


@pytest.mark.parametrize("value, name, address", [
    ("Alice <alice@example.com>", "Alice", "alice@example.com"),
    ('"Bob B." <bob@example.com>', "Bob B.", "bob@example.com"),
    ("carol@example.com", "carol@example.com", "carol@example.com"),
    ("<dave@example.com>", "dave@example.com", "dave@example.com"),
    ("Unknown", "Unknown", ""),
    ("", UNKNOWN_SENDER, ""),
])
def test_parse_address(value, name, address):
    parsed = parse_address(value)
    assert (parsed.name, parsed.address) == (name, address)


# =============================================================================
# Bodies
# =============================================================================

def test_plain_body():
    body = parse_body(plain_message(1, body="Just text"))
    assert body.text_content == "Just text"
    assert body.html_content is None
    assert body.attachments == []


def test_multipart_with_attachment():
    body = parse_body(multipart_message(1, attachment=b"PDFDATA", filename="report.pdf"))

    assert body.text_content == "See attached."
    assert len(body.attachments) == 1
    attachment = body.attachments[0]
    assert attachment.filename == "report.pdf"
    assert attachment.content_type == "application/pdf"
    assert attachment.content == b"PDFDATA"
    assert attachment.meta().size_bytes == 7


def test_alternative_keeps_first_text_and_html():
    raw = (
        'Content-Type: multipart/alternative; boundary="ALT"\n'
        "\n"
        "preamble\n"
        "--ALT\n"
        "Content-Type: text/plain\n"
        "Content-Transfer-Encoding: quoted-printable\n"
        "\n"
        "Caf=C3=A9 =\n"
        "time\n"
        "--ALT\n"
        "Content-Type: text/html; charset=utf-8\n"
        "\n"
        "<p>Café</p>\n"
        "--ALT\n"
        "Content-Type: text/plain\n"
        "\n"
        "second plain part\n"
        "--ALT--\n"
    )
    body = parse_body(raw.encode("utf-8"))

    assert body.text_content == "Café time"
    assert body.html_content == "<p>Café</p>"
    assert body.attachments == []


def test_nested_multipart():
    raw = (
        'Content-Type: multipart/mixed; boundary="OUTER"\n\n'
        "--OUTER\n"
        'Content-Type: multipart/alternative; boundary="INNER"\n\n'
        "--INNER\n"
        "Content-Type: text/plain\n\n"
        "inner text\n"
        "--INNER--\n"
        "--OUTER\n"
        "Content-Type: image/png\n"
        "Content-Transfer-Encoding: base64\n\n"
        "iVBORw0KGgo=\n"
        "--OUTER--\n"
    )
    body = parse_body(raw)

    assert body.text_content == "inner text"
    assert [a.filename for a in body.attachments] == ["attachment.png"]
    assert body.attachments[0].content.startswith(b"\x89PNG")


def test_html_only_fills_text():
    raw = "Content-Type: text/html\n\n<b>bold</b>\n"
    body = parse_body(raw)
    assert body.html_content == "<b>bold</b>"
    assert body.text_content == "<b>bold</b>"


def test_empty_body_is_no_content():
    assert parse_body("Subject: x\n\n").text_content == NO_CONTENT


def test_preview_strips_tags_and_truncates():
    assert generate_preview("<p>Hello   <b>there</b></p>") == "Hello there"
    preview = generate_preview("x" * 200, length=10)
    assert preview == "x" * 10 + "..."


# =============================================================================
# BODYSTRUCTURE
# =============================================================================

def test_plain_structure_has_no_attachments():
    tree = parse_bodystructure(PLAIN_STRUCTURE)
    assert tree is not None
    assert tree.content_type == "text/plain"
    assert not has_attachments(tree)


def test_mixed_structure_has_attachments():
    tree = parse_bodystructure(ATTACHMENT_STRUCTURE)
    assert tree.content_type == "multipart/mixed"
    assert [p.content_type for p in tree.parts] == ["text/plain", "application/pdf"]
    assert has_attachments(tree)


def test_alternative_structure_has_no_attachments():
    text = (
        '(("TEXT" "PLAIN" ("CHARSET" "utf-8") NIL NIL "7BIT" 10 1)'
        '("TEXT" "HTML" ("CHARSET" "utf-8") NIL NIL "7BIT" 20 1) "ALTERNATIVE")'
    )
    assert not has_attachments(parse_bodystructure(text))


def test_garbage_structure():
    assert not has_attachments(parse_bodystructure("((("))
    assert not has_attachments(None)
