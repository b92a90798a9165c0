from datetime import datetime, timezone

from planbridge.core.references import (
    GENERATED_REFERENCE_RE,
    generate_reference_id,
    hour_bucket,
    is_valid_caller_reference,
    is_valid_email,
    normalize_email,
)


def test_generated_reference_matches_pattern() -> None:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    reference_id = generate_reference_id(now)
    assert GENERATED_REFERENCE_RE.match(reference_id)
    assert reference_id.startswith(f"EXT-{int(now.timestamp() * 1000)}-")


def test_generated_references_are_unique_within_same_millisecond() -> None:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    generated = {generate_reference_id(now) for _ in range(1000)}
    assert len(generated) == 1000


def test_caller_reference_validation() -> None:
    assert is_valid_caller_reference("crm-123_ABC")
    assert not is_valid_caller_reference("has space")
    assert not is_valid_caller_reference("x" * 65)
    assert not is_valid_caller_reference("")


def test_email_helpers() -> None:
    assert normalize_email("  Ada@Example.COM ") == "ada@example.com"
    assert is_valid_email("ada@example.com")
    assert not is_valid_email("ada@example")
    assert not is_valid_email("ada example@example.com")


def test_hour_bucket_is_utc() -> None:
    assert hour_bucket(datetime(2026, 10, 19, 5, 59, tzinfo=timezone.utc)) == "2026101905"
    assert hour_bucket(datetime(2026, 10, 19, 5, 59)) == "2026101905"
