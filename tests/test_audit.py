from datetime import datetime, timedelta

import pytest

from face_checkin.audit import AuditLogger, percent_successful
from face_checkin.schemas import MatchPath, VerificationAttempt, VerificationOutcome

NOW = datetime(2024, 1, 15, 9, 30)


def attempt(outcome, confidence=0.0, subject=None, occurred_at=NOW, path=MatchPath.INDEXED):
    return VerificationAttempt(
        subject_identity_id=subject,
        occurred_at=occurred_at,
        match_confidence=confidence,
        probe_token="probe",
        outcome=outcome,
        match_path=path
    )


async def test_record_returns_stored_attempt(audit):
    stored = await audit.record(attempt(VerificationOutcome.SUCCESS, 92, "E1"))

    assert stored.id
    assert stored.outcome == VerificationOutcome.SUCCESS
    assert stored.match_confidence == 92
    assert stored.subject_identity_id == "E1"
    assert await audit.total() == 1


async def test_aggregates(audit):
    await audit.record(attempt(VerificationOutcome.SUCCESS, 90, "E1"))
    await audit.record(attempt(VerificationOutcome.SUCCESS, 84, "E2", occurred_at=NOW - timedelta(days=1)))
    await audit.record(attempt(VerificationOutcome.LOW_CONFIDENCE, 60))
    await audit.record(attempt(VerificationOutcome.NO_FACE_DETECTED, path=MatchPath.NONE))

    counts = await audit.count_by_outcome()
    assert counts == {
        VerificationOutcome.SUCCESS: 2,
        VerificationOutcome.LOW_CONFIDENCE: 1,
        VerificationOutcome.NO_FACE_DETECTED: 1,
    }
    assert await audit.average_success_confidence() == pytest.approx(87)
    assert await audit.successful_today(now=NOW) == 1
    assert await audit.success_rate() == pytest.approx(50)


async def test_empty_log_aggregates(audit):
    assert await audit.total() == 0
    assert await audit.count_by_outcome() == {}
    assert await audit.average_success_confidence() == 0.0
    assert await audit.success_rate() == 0.0
    assert await audit.successful_today(now=NOW) == 0


async def test_recent_joins_names_newest_first(audit, enroll):
    await enroll("E1")
    await audit.record(attempt(VerificationOutcome.SUCCESS, 90, "E1", occurred_at=NOW - timedelta(minutes=5)))
    await audit.record(attempt(VerificationOutcome.NOT_RECOGNIZED, 20, occurred_at=NOW))

    recent = await audit.recent()

    assert [r.outcome for r in recent] == [VerificationOutcome.NOT_RECOGNIZED, VerificationOutcome.SUCCESS]
    assert recent[0].subject_name == "Unknown"
    assert recent[1].subject_name == "Name E1"
    assert len(await audit.recent(limit=1)) == 1


async def test_summary(audit, enroll):
    await enroll("E1", "E2")
    await audit.record(attempt(VerificationOutcome.SUCCESS, 92, "E1"))
    await audit.record(attempt(VerificationOutcome.NOT_RECOGNIZED, 10))
    await audit.record(attempt(VerificationOutcome.NOT_RECOGNIZED, 12))

    stats = await audit.summary(now=NOW)

    assert stats.total_identities == 2
    assert stats.today_success == 1
    assert stats.success_rate == pytest.approx(33.33)
    assert stats.average_confidence == 92
    assert stats.by_outcome == {"success": 1, "not_recognized": 2}


class _BrokenSession:
    async def __aenter__(self):
        raise ConnectionError("database is down")

    async def __aexit__(self, *exc):
        return False


async def test_write_failure_is_reported_not_raised(caplog):
    audit = AuditLogger(lambda: _BrokenSession())

    with caplog.at_level("ERROR", logger="face_checkin.audit"):
        result = await audit.record(attempt(VerificationOutcome.SUCCESS, 90, "E1"))

    assert result is None
    assert audit.failed_writes == 1
    assert "Failed to record verification attempt" in caplog.text
    assert caplog.records[-1].audit_attempt["outcome"] == "success"


@pytest.mark.parametrize(
    "counts,expected",
    [
        ({}, 0.0),
        ({VerificationOutcome.SUCCESS: 3}, 100.0),
        ({VerificationOutcome.SUCCESS: 1, VerificationOutcome.LOW_QUALITY: 3}, 25.0),
    ],
)
def test_percent_successful(counts, expected):
    assert percent_successful(counts) == expected


async def test_summary_rate_matches_success_rate(audit):
    await audit.record(attempt(VerificationOutcome.SUCCESS, 92, "E1"))
    await audit.record(attempt(VerificationOutcome.LOW_CONFIDENCE, 61))
    await audit.record(attempt(VerificationOutcome.NOT_RECOGNIZED, 10))

    stats = await audit.summary(now=NOW)

    assert stats.success_rate == round(await audit.success_rate(), 2)


async def test_capture_token_is_not_persisted(audit):
    stored = await audit.record(attempt(VerificationOutcome.SUCCESS, 92, "E1"))

    assert stored.probe_token is None
    assert (await audit.recent())[0].outcome == VerificationOutcome.SUCCESS
