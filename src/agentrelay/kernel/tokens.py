"""Closed-pattern validation for tokens that end up in a process argv.

Anything influenced by chat input or agent output (branch names, model and
platform ids) goes through one of these before it reaches subprocess.
"""
from __future__ import annotations

import re

from .errors import RelayError

_MODEL_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/:-]{0,127}$")
_PLATFORM_RE = re.compile(r"^[a-z][a-z0-9_-]{0,31}$")
_PREFIX_RE = re.compile(r"^[a-z][a-z0-9_-]{0,31}$")
_FIX_BRANCH_RE = re.compile(r"^(?P<prefix>[a-z][a-z0-9_-]{0,31})/auto-(?P<num>\d{1,20})$")
_TASK_BRANCH_RE = re.compile(r"^relay/task-[0-9a-f]{1,32}-\d{1,6}$")


class InvalidTokenError(RelayError, ValueError):
    """Raised before any process call when a token fails its pattern."""


def validate_model_id(value: str) -> str:
    s = str(value or "")
    if not _MODEL_RE.fullmatch(s) or ".." in s:
        raise InvalidTokenError(f"invalid model id: {value!r}")
    return s


def validate_platform(value: str) -> str:
    s = str(value or "")
    if not _PLATFORM_RE.fullmatch(s):
        raise InvalidTokenError(f"invalid platform id: {value!r}")
    return s


def validate_fix_branch(value: str, *, prefix: str = "") -> str:
    """Accept exactly `<prefix>/auto-<digits>`."""
    s = str(value or "")
    m = _FIX_BRANCH_RE.fullmatch(s)
    if m is None:
        raise InvalidTokenError(f"invalid fix branch: {value!r}")
    if prefix and m.group("prefix") != prefix:
        raise InvalidTokenError(f"fix branch {value!r} does not use prefix {prefix!r}")
    return s


def validate_task_branch(value: str) -> str:
    s = str(value or "")
    if not _TASK_BRANCH_RE.fullmatch(s):
        raise InvalidTokenError(f"invalid task branch: {value!r}")
    return s


def fix_branch_name(prefix: str, number: int) -> str:
    if not _PREFIX_RE.fullmatch(prefix or ""):
        raise InvalidTokenError(f"invalid branch prefix: {prefix!r}")
    return validate_fix_branch(f"{prefix}/auto-{int(number)}", prefix=prefix)


def task_branch_name(dispatch_id: str, task_id: int) -> str:
    return validate_task_branch(f"relay/task-{dispatch_id}-{int(task_id)}")
