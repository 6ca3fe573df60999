"""Helpers for building Docker-compatible image tags."""

from __future__ import annotations

import re
import secrets
import time

_TAG_CLEAN_RE = re.compile(r"[^a-zA-Z0-9\-]+")

# "A tag ... may contain a maximum of 128 characters."
MAX_TAG_LEN = 128


def check_len(value: str, limit: int) -> str:
    """Return ``value`` unchanged, raising ValueError if it is longer than ``limit``."""
    if len(value) > limit:
        raise ValueError(f"Expected string '{value}' len to be less than {limit}")
    return value


def check_tag_len128(tag: str) -> str:
    """Return ``tag`` unchanged if it fits into a Docker tag."""
    return check_len(tag, MAX_TAG_LEN)


def trim_str(value: str, limit: int) -> str:
    """Cut ``value`` down to ``limit`` characters, never ending on a dash."""
    if len(value) > limit:
        value = value[:limit]
        if value.endswith("-"):
            value = value[:-1] + "e"
    return value


def clean_str(value: str) -> str:
    """Replace every run of characters not allowed in tags with a single dash."""
    return _TAG_CLEAN_RE.sub("-", value)


def random_str50() -> str:
    """Return a random, time-prefixed string of at most 50 characters."""
    digits = "".join(str(b) for b in secrets.token_bytes(5))
    # Timestamp at the beginning for easier sorting
    return check_len(f"rand-{time.time_ns()}-{digits}", 50)