# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 The IndexKeeper Authors

"""
IndexKeeper Checksum Store Tests

Run with: pytest tests/test_checksum.py -v
"""

import pytest

from indexkeeper.checksum import (
    is_valid_token,
    parse_checksum_text,
    read_token,
    tokens_match,
    write_token,
)

VALID = "d41d8cd98f00b204e9800998ecf8427e"


# =============================================================================
# VALIDATION
# =============================================================================

@pytest.mark.parametrize("value", [VALID, VALID.upper(), "0" * 32])
def test_valid_tokens(value):
    """Test 32-character hex digests are accepted in either case."""
    assert is_valid_token(value)


@pytest.mark.parametrize("value", [
    None,
    "",
    VALID[:-1],
    VALID + "0",
    "g" * 32,
    f" {VALID}",
    f"{VALID}\n",
    "<html>503 Service Unavailable</html>",
])
def test_invalid_tokens(value):
    """Test anything that is not exactly 32 hex chars is rejected."""
    assert not is_valid_token(value)


def test_tokens_match_case_insensitive():
    """Test token comparison ignores hex case."""
    assert tokens_match(VALID, VALID.upper())
    assert not tokens_match(VALID, "0" * 32)


def test_tokens_match_rejects_invalid():
    """Test invalid tokens never match, not even themselves."""
    assert not tokens_match(None, None)
    assert not tokens_match("garbage", "garbage")


def test_parse_checksum_text_md5sum_format():
    """Test md5sum output yields the digest only."""
    assert parse_checksum_text(f"{VALID}  photon-db-latest.tar.bz2\n") == VALID


def test_parse_checksum_text_bare_digest():
    """Test a bare digest with trailing newline is accepted."""
    assert parse_checksum_text(f"{VALID}\n") == VALID


@pytest.mark.parametrize("text", ["", "   \n", "not-a-digest file.tar", "<html></html>"])
def test_parse_checksum_text_invalid(text):
    """Test malformed checksum text yields None."""
    assert parse_checksum_text(text) is None


# =============================================================================
# PERSISTENCE
# =============================================================================

def test_write_then_read(tmp_path):
    """Test a written token reads back identically."""
    path = tmp_path / "current.md5"

    write_token(path, VALID)

    assert read_token(path) == VALID
    assert path.read_text() == VALID + "\n"
    assert not (tmp_path / "current.md5.tmp").exists()


def test_write_creates_parent_dirs(tmp_path):
    """Test writing into a missing directory creates it."""
    path = tmp_path / "nested" / "dir" / "last_known.md5"

    write_token(path, VALID)

    assert read_token(path) == VALID


def test_write_overwrites(tmp_path):
    """Test a second write replaces the first."""
    path = tmp_path / "current.md5"
    write_token(path, VALID)
    write_token(path, "0" * 32)

    assert read_token(path) == "0" * 32


def test_write_rejects_invalid_token(tmp_path):
    """Test invalid tokens are never persisted."""
    path = tmp_path / "current.md5"

    with pytest.raises(ValueError):
        write_token(path, "not-a-token")

    assert not path.exists()


def test_read_missing_file(tmp_path):
    """Test a missing file reads as None."""
    assert read_token(tmp_path / "absent.md5") is None


def test_read_empty_file(tmp_path):
    """Test an empty file reads as None."""
    path = tmp_path / "empty.md5"
    path.write_text("")

    assert read_token(path) is None


def test_read_strips_whitespace(tmp_path):
    """Test surrounding whitespace and CRLF are ignored."""
    path = tmp_path / "token.md5"
    path.write_text(f"  {VALID}\r\n")

    assert read_token(path) == VALID


def test_read_malformed_file(tmp_path):
    """Test garbage content reads as None."""
    path = tmp_path / "token.md5"
    path.write_text("<html>Bad Gateway</html>\n")

    assert read_token(path) is None


def test_read_directory_is_none(tmp_path):
    """Test a directory in place of the token file reads as None."""
    path = tmp_path / "token.md5"
    path.mkdir()

    assert read_token(path) is None
