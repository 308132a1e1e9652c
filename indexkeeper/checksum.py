# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Checksum Store

Persists and reads the version tokens (32-character hex digests) that
identify dataset snapshots. Two files exist on disk: the latest token
fetched from the remote archive, and the token of the dataset the server
was last started with. This module only stores and validates; deciding
whether an update is needed is the orchestrator's job.
"""

import logging
import os
import re
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"[a-fA-F0-9]{32}")


def is_valid_token(value: Optional[str]) -> bool:
    """Check whether a value is a 32-character hex digest."""
    return isinstance(value, str) and TOKEN_PATTERN.fullmatch(value) is not None


def tokens_match(first: Optional[str], second: Optional[str]) -> bool:
    """Compare two tokens case-insensitively. Invalid tokens never match."""
    if not (is_valid_token(first) and is_valid_token(second)):
        return False
    return first.lower() == second.lower()


def parse_checksum_text(text: str) -> Optional[str]:
    """
    Extract the digest from a checksum listing.

    Accepts ``md5sum`` output ("<digest>  <filename>") or a bare digest.
    Only the first whitespace-delimited token is considered.

    Returns:
        The digest, or None if the text does not start with a valid one.
    """
    parts = text.split()
    if not parts:
        return None
    candidate = parts[0]
    return candidate if is_valid_token(candidate) else None


def read_token(path: Path) -> Optional[str]:
    """
    Read a version token from disk.

    Missing, empty, unreadable or malformed files all read as None so that
    a garbage value can never be used in a comparison.
    """
    path = Path(path)
    try:
        if not path.is_file():
            return None
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as e:
        logger.warning("Could not read token file %s: %s", path, e)
        return None

    if not lines:
        return None
    value = "".join(lines[0].split())
    if not is_valid_token(value):
        logger.debug("Ignoring malformed token in %s", path)
        return None
    return value


def write_token(path: Path, token: str) -> None:
    """
    Atomically write a version token.

    Raises:
        ValueError: If the token is not a 32-character hex digest.
        OSError: If the file cannot be written.
    """
    if not is_valid_token(token):
        raise ValueError(f"Invalid version token: {token!r}")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_text(token + "\n", encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    logger.debug("Wrote token %s to %s", token, path)
