# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Run fingerprints and the resource names derived from them.

A fingerprint is a pure function of (revision, date marker): two runs of the
same commit on the same day share a fingerprint, and therefore a lock key, a
workspace and a bucket. Nothing here samples a clock or a random source.

The value is `"{revision}-{date_marker}"`. When the revision itself contains a
'-', that split is ambiguous (("a-b", "c") and ("a", "b-c") both read "a-b-c"),
so a short digest of the pair is appended. Resource names are sanitised
separately; a name whose fingerprint had to be rewritten carries a digest of
the original value so that distinct fingerprints keep distinct names.
"""

import re
from dataclasses import dataclass

from ..api.errors import MalformedInput
from ..core.types import BUCKET_NAME_MAX, BUCKET_NAME_MIN
from ..core.utils import stable_hash

__all__ = ["Fingerprint", "derive", "bucket_name", "workspace_name"]

_REVISION_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_REVISION_MAX = 40
_MARKER_MAX = 128

_BUCKET_BAD = re.compile(r"[^a-z0-9.-]+")
_WORKSPACE_BAD = re.compile(r"[^a-z0-9_-]+")
_SUFFIX_LEN = 8
_PAIR_DIGEST_LEN = 12


def _digest(payload, n: int) -> str:
    return stable_hash(payload, digest_size=8)[:n]


@dataclass(frozen=True)
class Fingerprint:
    revision: str
    date_marker: str

    @property
    def value(self) -> str:
        base = f"{self.revision}-{self.date_marker}"
        if "-" in self.revision:
            return f"{base}-{_digest([self.revision, self.date_marker], _PAIR_DIGEST_LEN)}"
        return base

    def __str__(self) -> str:
        return self.value


def _text(label: str, raw: str) -> str:
    if not isinstance(raw, str):
        raise MalformedInput(f"{label} must be a string, got {type(raw).__name__}")
    s = raw.strip()
    if not s:
        raise MalformedInput(f"{label} must not be empty")
    return s


def derive(revision: str, date_marker: str) -> Fingerprint:
    """
    Build the fingerprint for a run.

        >>> derive("abc123", "2025-11-07").value
        'abc123-2025-11-07'

    Surrounding whitespace is stripped; case is kept. Revisions use
    [A-Za-z0-9._-] (at most 40 chars, starting with a letter or digit). The date
    marker may be any printable text up to 128 chars, e.g. an ISO timestamp.
    Raises MalformedInput otherwise.
    """
    rev = _text("revision", revision)
    if len(rev) > _REVISION_MAX:
        raise MalformedInput(f"revision is longer than {_REVISION_MAX} characters: {revision!r}")
    if not _REVISION_RE.match(rev):
        raise MalformedInput(f"revision contains disallowed characters: {revision!r}")
    marker = _text("date marker", date_marker)
    if len(marker) > _MARKER_MAX:
        raise MalformedInput(f"date marker is longer than {_MARKER_MAX} characters: {date_marker!r}")
    if not marker.isprintable():
        raise MalformedInput(f"date marker contains non-printable characters: {date_marker!r}")
    return Fingerprint(revision=rev, date_marker=marker)


def _fit(name: str, max_len: int) -> str:
    if len(name) <= max_len:
        return name
    # Keep distinct inputs distinct after truncation.
    suffix = _digest(name, _SUFFIX_LEN)
    head = name[: max_len - _SUFFIX_LEN - 1].rstrip(".-")
    return f"{head}-{suffix}"


def _clean_fingerprint(fp: Fingerprint, bad: re.Pattern[str]) -> str:
    clean = bad.sub("-", fp.value.lower()).replace("..", ".").strip(".-")
    if clean != fp.value:
        clean = f"{clean}-{_digest(fp.value, _SUFFIX_LEN)}"
    return clean


def bucket_name(fp: Fingerprint, fmt: str = "{fingerprint}") -> str:
    """S3-compatible bucket name: lowercase, 3..63 chars, no leading/trailing punctuation."""
    raw = fmt.format(fingerprint=_clean_fingerprint(fp, _BUCKET_BAD)).lower()
    name = _BUCKET_BAD.sub("-", raw).replace("..", ".").strip(".-")
    name = _fit(name, BUCKET_NAME_MAX)
    if len(name) < BUCKET_NAME_MIN:
        raise MalformedInput(f"bucket name {name!r} is shorter than {BUCKET_NAME_MIN} characters")
    return name


def workspace_name(fp: Fingerprint, fmt: str = "{fingerprint}") -> str:
    """Terraform workspace name (letters, digits, '-' and '_')."""
    raw = fmt.format(fingerprint=_clean_fingerprint(fp, _WORKSPACE_BAD)).lower()
    name = _WORKSPACE_BAD.sub("-", raw).strip("-")
    if not name or name == "default":
        raise MalformedInput(f"workspace name {raw!r} is not usable")
    return _fit(name, 90)
