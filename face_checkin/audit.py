"""
Audit Logger

Append-only log of verification attempts. The probe token of an attempt
is never written; it only lives for the duration of the verification call.

Writing never fails the caller: a storage error is reported on this
module's logger and counted, and the decision already made stands. The read
side offers the aggregate queries used by the attendance dashboard.
"""
import logging
import uuid
from datetime import datetime, time
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from face_checkin.config import RECENT_ATTEMPTS_LIMIT
from face_checkin.models import IdentityDB, VerificationAttemptDB, utc_now
from face_checkin.schemas import (
    AttemptRecord,
    AuditStats,
    MatchPath,
    VerificationAttempt,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)


def percent_successful(counts: Dict[VerificationOutcome, int]) -> float:
    """Successful attempts as a percentage of all attempts (0 when empty)."""
    total = sum(counts.values())
    if total == 0:
        return 0.0
    return counts.get(VerificationOutcome.SUCCESS, 0) / total * 100


class AuditLogger:
    """Writes and summarizes verification attempts. No update or delete."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        self.failed_writes = 0

    async def record(self, attempt: VerificationAttempt) -> Optional[VerificationAttempt]:
        """
        Append one attempt.

        Returns:
            The stored attempt (with its id), or None when the write failed
        """
        row = VerificationAttemptDB(
            id=uuid.uuid4(),
            subject_identity_id=attempt.subject_identity_id,
            occurred_at=attempt.occurred_at,
            match_confidence=attempt.match_confidence,
            outcome=attempt.outcome.value,
            match_path=attempt.match_path.value
        )

        try:
            async with self._session_maker() as session:
                session.add(row)
                await session.commit()
        except Exception as e:
            self.failed_writes += 1
            logger.error(
                f"Failed to record verification attempt ({attempt.outcome.value}): {e}",
                extra={"audit_attempt": attempt.model_dump(mode="json", exclude={"probe_token"})},
                exc_info=True
            )
            return None

        logger.debug(f"Recorded attempt {row.id} ({attempt.outcome.value})")
        return row.to_schema()

    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------

    async def total(self) -> int:
        async with self._session_maker() as session:
            result = await session.execute(select(func.count(VerificationAttemptDB.id)))
            return result.scalar() or 0

    async def count_by_outcome(self) -> Dict[VerificationOutcome, int]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(VerificationAttemptDB.outcome, func.count(VerificationAttemptDB.id))
                .group_by(VerificationAttemptDB.outcome)
            )
            return {VerificationOutcome(outcome): count for outcome, count in result.all()}

    async def average_success_confidence(self) -> float:
        async with self._session_maker() as session:
            result = await session.execute(
                select(func.avg(VerificationAttemptDB.match_confidence))
                .where(VerificationAttemptDB.outcome == VerificationOutcome.SUCCESS.value)
            )
            average = result.scalar()
            return float(average) if average is not None else 0.0

    async def successful_today(self, now: Optional[datetime] = None) -> int:
        """Successful attempts since midnight (UTC) of `now`."""
        midnight = datetime.combine((now or utc_now()).date(), time.min)
        async with self._session_maker() as session:
            result = await session.execute(
                select(func.count(VerificationAttemptDB.id))
                .where(VerificationAttemptDB.outcome == VerificationOutcome.SUCCESS.value)
                .where(VerificationAttemptDB.occurred_at >= midnight)
            )
            return result.scalar() or 0

    async def success_rate(self) -> float:
        return percent_successful(await self.count_by_outcome())

    async def recent(self, limit: int = RECENT_ATTEMPTS_LIMIT) -> List[AttemptRecord]:
        """Newest attempts first, joined with the subject's display name."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(VerificationAttemptDB, IdentityDB.display_name)
                .outerjoin(IdentityDB, IdentityDB.identity_id == VerificationAttemptDB.subject_identity_id)
                .order_by(VerificationAttemptDB.occurred_at.desc())
                .limit(limit)
            )
            return [
                AttemptRecord(
                    id=str(row.id),
                    subject_identity_id=row.subject_identity_id,
                    subject_name=name or "Unknown",
                    occurred_at=row.occurred_at,
                    match_confidence=row.match_confidence,
                    outcome=VerificationOutcome(row.outcome),
                    match_path=MatchPath(row.match_path)
                )
                for row, name in result.all()
            ]

    async def summary(self, now: Optional[datetime] = None) -> AuditStats:
        async with self._session_maker() as session:
            result = await session.execute(select(func.count(IdentityDB.id)))
            total_identities = result.scalar() or 0

        counts = await self.count_by_outcome()

        return AuditStats(
            total_identities=total_identities,
            today_success=await self.successful_today(now),
            success_rate=round(percent_successful(counts), 2),
            average_confidence=round(await self.average_success_confidence(), 2),
            by_outcome={outcome.value: count for outcome, count in counts.items()}
        )
