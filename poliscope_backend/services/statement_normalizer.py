"""Validation and canonicalization of raw inbound statements."""

import hashlib
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from poliscope_backend.domain import SOURCE_TYPES, Author, Statement
from poliscope_backend.errors import ValidationError

_WHITESPACE_RE = re.compile(r"\s+")
_FINGERPRINT_RE = re.compile(r"^[0-9a-f]{64}$")
_FIELD_SEPARATOR = "\x1f"


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def canonical_text(text: str) -> str:
    """Form of the text that feeds the fingerprint."""
    return collapse_whitespace(unicodedata.normalize("NFKC", text)).lower()


def parse_occurred_at(value: Any) -> datetime:
    """Parse ISO-8601 strings, datetimes or epoch seconds into an aware UTC datetime."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        candidate = value.strip()
        if candidate.endswith(("Z", "z")):
            candidate = candidate[:-1] + "+00:00"
        parsed = datetime.fromisoformat(candidate)
    else:
        raise ValueError("expected ISO-8601 string, datetime or epoch seconds")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_author(value: Any) -> Author:
    if value is None:
        return Author()
    if isinstance(value, str):
        return Author(name=collapse_whitespace(value))
    if not isinstance(value, Mapping):
        raise ValidationError("author", "must be an object or a string")

    name = value.get("name") or ""
    affiliation = value.get("affiliation")
    hint = _pick(value, "ideologyHint", "ideology_hint")
    for key, item in (("name", name), ("affiliation", affiliation), ("ideologyHint", hint)):
        if item is not None and not isinstance(item, str):
            raise ValidationError(f"author.{key}", "must be a string")

    return Author(
        name=collapse_whitespace(name),
        affiliation=collapse_whitespace(affiliation) if affiliation else None,
        ideology_hint=hint.strip().lower() if hint else None,
    )


def compute_fingerprint(text: str, author: Author, occurred_at: datetime) -> str:
    material = _FIELD_SEPARATOR.join(
        [
            canonical_text(text),
            (author.name or "").lower(),
            (author.affiliation or "").lower(),
            occurred_at.astimezone(timezone.utc).isoformat(),
        ]
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def normalize_statement(raw: Any, now: Optional[datetime] = None) -> Statement:
    """
    Validate an untyped payload and build a Statement.

    Raises ValidationError naming the first failing field. Never returns a
    partially built Statement.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("payload", "must be a JSON object")

    text = raw.get("text")
    if not isinstance(text, str) or not collapse_whitespace(text):
        raise ValidationError("text", "must be a non-empty string")
    text = collapse_whitespace(text)

    source_type = _pick(raw, "sourceType", "source_type")
    if not isinstance(source_type, str) or source_type.strip().lower() not in SOURCE_TYPES:
        raise ValidationError("sourceType", f"must be one of {', '.join(SOURCE_TYPES)}")
    source_type = source_type.strip().lower()

    occurred_raw = _pick(raw, "occurredAt", "occurred_at")
    try:
        occurred_at = parse_occurred_at(occurred_raw)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise ValidationError("occurredAt", f"unparseable timestamp ({exc})") from exc

    author = _parse_author(raw.get("author"))

    region = raw.get("region")
    if region is not None and not isinstance(region, str):
        raise ValidationError("region", "must be a string")
    region = region.strip() if region and region.strip() else None

    supersedes = raw.get("supersedes")
    if supersedes is not None:
        if not isinstance(supersedes, str) or not _FINGERPRINT_RE.match(supersedes.strip().lower()):
            raise ValidationError("supersedes", "must be a statement fingerprint")
        supersedes = supersedes.strip().lower()

    fingerprint = compute_fingerprint(text, author, occurred_at)
    if supersedes == fingerprint:
        raise ValidationError("supersedes", "a statement cannot supersede itself")

    return Statement(
        id=fingerprint,
        text=text,
        author=author,
        source_type=source_type,
        region=region,
        occurred_at=occurred_at,
        ingested_at=now or datetime.now(timezone.utc),
        supersedes=supersedes,
    )
