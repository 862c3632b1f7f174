"""
Tests for inbound statement validation and fingerprinting.
"""

from datetime import datetime, timedelta, timezone

import pytest

from poliscope_backend.errors import ValidationError
from poliscope_backend.services.statement_normalizer import (
    canonical_text,
    compute_fingerprint,
    normalize_statement,
    parse_occurred_at,
)

NOW = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)


def _field_of(raw):
    with pytest.raises(ValidationError) as exc_info:
        normalize_statement(raw, now=NOW)
    return exc_info.value.field


class TestNormalizeStatement:
    def test_builds_statement_from_camel_case_payload(self, make_raw):
        raw = make_raw(
            "  AI regulation   must balance\ninnovation and safety ",
            author={"name": "Jane Doe", "affiliation": "Senate", "ideologyHint": "Center"},
            region="EU",
        )

        statement = normalize_statement(raw, now=NOW)

        assert statement.text == "AI regulation must balance innovation and safety"
        assert statement.author.name == "Jane Doe"
        assert statement.author.affiliation == "Senate"
        assert statement.author.ideology_hint == "center"
        assert statement.source_type == "speech"
        assert statement.region == "EU"
        assert statement.ingested_at == NOW
        assert len(statement.id) == 64
        assert all(c in "0123456789abcdef" for c in statement.id)

    def test_accepts_snake_case_keys(self, base_time):
        statement = normalize_statement(
            {"text": "Tax cuts now", "source_type": "Interview", "occurred_at": base_time.isoformat()},
            now=NOW,
        )
        assert statement.source_type == "interview"
        assert statement.occurred_at == base_time

    def test_string_author_becomes_author_name(self, make_raw):
        statement = normalize_statement(make_raw(author="  Jane   Doe "), now=NOW)
        assert statement.author.name == "Jane Doe"
        assert statement.author.affiliation is None

    def test_blank_region_is_dropped(self, make_raw):
        statement = normalize_statement(make_raw(region="   "), now=NOW)
        assert statement.region is None


class TestFingerprint:
    def test_whitespace_and_case_do_not_change_fingerprint(self, make_raw):
        first = normalize_statement(make_raw("AI regulation must balance innovation"), now=NOW)
        second = normalize_statement(make_raw("ai  REGULATION must\tbalance innovation "), now=NOW)
        assert first.id == second.id

    def test_author_is_part_of_identity(self, make_raw):
        first = normalize_statement(make_raw(author="Jane Doe"), now=NOW)
        second = normalize_statement(make_raw(author="John Roe"), now=NOW)
        assert first.id != second.id

    def test_occurred_at_is_part_of_identity(self, make_raw, base_time):
        first = normalize_statement(make_raw(occurred_at=base_time), now=NOW)
        second = normalize_statement(make_raw(occurred_at=base_time + timedelta(seconds=1)), now=NOW)
        assert first.id != second.id

    def test_equivalent_timestamps_share_fingerprint(self, make_raw):
        utc = normalize_statement(make_raw(occurred_at="2026-03-01T12:00:00Z"), now=NOW)
        offset = normalize_statement(make_raw(occurred_at="2026-03-01T14:00:00+02:00"), now=NOW)
        assert utc.id == offset.id

    def test_ingest_time_is_not_part_of_identity(self, make_raw):
        first = normalize_statement(make_raw(), now=NOW)
        second = normalize_statement(make_raw(), now=NOW + timedelta(hours=3))
        assert first.id == second.id

    def test_canonical_text_applies_nfkc(self):
        assert canonical_text("ﬁscal  Policy") == "fiscal policy"

    def test_compute_fingerprint_is_stable(self, make_statement):
        statement = make_statement()
        assert compute_fingerprint(statement.text, statement.author, statement.occurred_at) == statement.id


class TestValidationFailures:
    def test_non_object_payload(self):
        assert _field_of(["text"]) == "payload"

    def test_missing_text(self, make_raw):
        raw = make_raw()
        del raw["text"]
        assert _field_of(raw) == "text"

    def test_whitespace_only_text(self, make_raw):
        assert _field_of(make_raw("   \n\t ")) == "text"

    def test_unknown_source_type(self, make_raw):
        assert _field_of(make_raw(source_type="podcast")) == "sourceType"

    def test_unparseable_timestamp(self, make_raw):
        assert _field_of(make_raw(occurred_at="yesterday")) == "occurredAt"

    def test_missing_timestamp(self, make_raw):
        raw = make_raw()
        del raw["occurredAt"]
        assert _field_of(raw) == "occurredAt"

    def test_first_failing_field_is_reported(self, make_raw):
        raw = make_raw(source_type="podcast", occurred_at="never")
        raw["text"] = ""
        assert _field_of(raw) == "text"

    def test_author_must_be_object_or_string(self, make_raw):
        assert _field_of(make_raw(author=42)) == "author"

    def test_author_name_must_be_string(self, make_raw):
        assert _field_of(make_raw(author={"name": 7})) == "author.name"

    def test_supersedes_must_be_fingerprint(self, make_raw):
        assert _field_of(make_raw(supersedes="stmt-1")) == "supersedes"

    def test_statement_cannot_supersede_itself(self, make_raw):
        raw = make_raw()
        own_id = normalize_statement(raw, now=NOW).id
        assert _field_of(dict(raw, supersedes=own_id)) == "supersedes"

    def test_error_carries_message(self, make_raw):
        with pytest.raises(ValidationError) as exc_info:
            normalize_statement(make_raw(source_type="podcast"), now=NOW)
        assert "speech" in exc_info.value.message


class TestParseOccurredAt:
    def test_epoch_seconds(self):
        assert parse_occurred_at(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_naive_iso_is_treated_as_utc(self):
        assert parse_occurred_at("2026-03-01T12:00:00") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)

    def test_zulu_suffix(self):
        assert parse_occurred_at("2026-03-01T12:00:00Z").tzinfo is not None

    def test_boolean_is_rejected(self):
        with pytest.raises(ValueError):
            parse_occurred_at(True)
