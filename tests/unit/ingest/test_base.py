"""Tests for shared normalization, redaction and TextBuilder offsets."""

from __future__ import annotations

import pytest

from kbase.errors import EmptyContent
from kbase.ingest.base import REDACTED, TextBuilder, content_hash, decode, normalize_text, redact


# ------------------------------------------------------------------
# normalize_text
# ------------------------------------------------------------------

def test_normalize_line_endings_and_nul():
    assert normalize_text("a\r\nb\rc\x00d") == "a\nb\ncd"


def test_normalize_collapses_inline_whitespace():
    assert normalize_text("  hello \t  world  ") == "hello world"


def test_normalize_keeps_single_blank_line():
    assert normalize_text("a\n\n\n\nb\n\n") == "a\n\nb"


def test_normalize_is_idempotent():
    text = normalize_text(" x \n\n\n y\t z \n")
    assert normalize_text(text) == text


# ------------------------------------------------------------------
# redact
# ------------------------------------------------------------------

def test_redact_credential_pair_keeps_label():
    assert redact("api_key = sk-live-123") == f"api_key: {REDACTED}"
    assert redact("Password: hunter2") == f"Password: {REDACTED}"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("DB_PASSWORD=hunter2", f"DB_PASSWORD: {REDACTED}"),
        ("GITHUB_TOKEN=short-tok", f"GITHUB_TOKEN: {REDACTED}"),
        ("aws_secret_access_key: wJalrXUtnFEMI/K7MDENG", f"aws_secret_access_key: {REDACTED}"),
        ("export my-api-key=abc123 now", f"export my-api-key: {REDACTED} now"),
    ],
)
def test_redact_prefixed_credential_labels(raw, expected):
    assert redact(raw) == expected


def test_redact_ignores_words_ending_in_key():
    assert redact("Monkey: banana") == "Monkey: banana"
    assert redact("Turnkey = yes") == "Turnkey = yes"


def test_redact_long_alphanumeric_run():
    token = "A" * 12 + "9" * 12
    assert redact(f"token value {token} end") == f"token value {REDACTED} end"


def test_redact_leaves_short_words():
    assert redact("Invoice No: INV-2024-001") == "Invoice No: INV-2024-001"


# ------------------------------------------------------------------
# decode / hash
# ------------------------------------------------------------------

def test_decode_replaces_invalid_bytes_and_strips_bom():
    assert decode(b"\xef\xbb\xbfcaf\xc3\xa9") == "café"
    assert decode(b"ok \xff") == "ok \ufffd"


def test_content_hash_is_sha256_hex():
    digest = content_hash("abc")
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


# ------------------------------------------------------------------
# TextBuilder
# ------------------------------------------------------------------

def test_builder_span_offsets_index_final_text():
    b = TextBuilder()
    first = b.add("  Hello   world ", {"page": 1})
    second = b.add("Second\tpiece", {"page": 2}, sep="\n\n")
    out = b.build("pdf")
    assert out.text == "Hello world\n\nSecond piece"
    assert out.text[first.start:first.end] == "Hello world"
    assert out.text[second.start:second.end] == "Second piece"
    assert second.meta == {"page": 2}
    assert out.format == "pdf"
    assert out.content_hash == content_hash(out.text)


def test_builder_redacts_each_piece():
    b = TextBuilder()
    span = b.add("secret: abc")
    out = b.build("text")
    assert out.text == f"secret: {REDACTED}"
    assert span.end == len(out.text)


def test_builder_skips_blank_pieces():
    b = TextBuilder()
    assert b.add("   \n  ") is None
    assert b.empty


def test_builder_empty_raises():
    with pytest.raises(EmptyContent):
        TextBuilder().build("text")
