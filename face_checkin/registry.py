"""
Identity Registry

Owns the lifecycle of enrolled identities. Identities are created on
enrollment, only ever mutated by token rotation, and never deleted here.
Uniqueness of identity_id and reference_token is enforced by the database
constraints, so concurrent registrations of one identifier cannot both win.
"""
import logging
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from face_checkin.exceptions import DuplicateIdentityError, IdentityNotFoundError
from face_checkin.models import IdentityDB, utc_now
from face_checkin.schemas import EnrollmentQuality, Identity

logger = logging.getLogger(__name__)


class IdentityRegistry:
    """
    Registry of enrolled identities backed by the identities table.

    Every method opens its own short session and returns detached
    snapshots, so a registry instance can be shared by concurrent requests.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def register(
        self,
        identity_id: str,
        display_name: str,
        reference_token: str,
        quality: EnrollmentQuality,
        group_token: Optional[str] = None
    ) -> Identity:
        """
        Create a new identity.

        Raises:
            DuplicateIdentityError: identity_id already enrolled, or the
                reference token is already held by another identity.
                The existing row is left untouched.
        """
        async with self._session_maker() as session:
            existing = await self._get_row(session, identity_id)
            if existing is not None:
                raise DuplicateIdentityError(identity_id)

            now = utc_now()
            row = IdentityDB(
                identity_id=identity_id,
                display_name=display_name,
                reference_token=reference_token,
                group_token=group_token,
                quality_score=quality.quality,
                blur_score=quality.blur,
                enrolled_at=now,
                updated_at=now
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                # Lost a race with a concurrent insert, or the token is taken
                raise DuplicateIdentityError(identity_id, "unique constraint violated") from e
            await session.refresh(row)

            logger.info(f"Registered identity {identity_id} ('{display_name}')")
            return row.to_schema()

    async def get(self, identity_id: str) -> Optional[Identity]:
        async with self._session_maker() as session:
            row = await self._get_row(session, identity_id)
            return row.to_schema() if row else None

    async def find_by_token(self, reference_token: str) -> Optional[Identity]:
        """Resolve a provider reference token to the identity holding it."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(IdentityDB).where(IdentityDB.reference_token == reference_token)
            )
            row = result.scalar_one_or_none()
            return row.to_schema() if row else None

    async def list(self) -> List[Identity]:
        """All identities, earliest enrollment first."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(IdentityDB).order_by(IdentityDB.enrolled_at.asc(), IdentityDB.id.asc())
            )
            return [row.to_schema() for row in result.scalars().all()]

    async def count(self) -> int:
        async with self._session_maker() as session:
            result = await session.execute(select(func.count(IdentityDB.id)))
            return result.scalar() or 0

    async def rotate_token(
        self,
        identity_id: str,
        reference_token: str,
        quality: EnrollmentQuality,
        group_token: Optional[str] = None
    ) -> Identity:
        """
        Replace the reference token of an existing identity.

        Raises:
            IdentityNotFoundError: no identity with this identifier
            DuplicateIdentityError: the new token belongs to another identity
        """
        async with self._session_maker() as session:
            row = await self._get_row(session, identity_id)
            if row is None:
                raise IdentityNotFoundError(identity_id)

            row.reference_token = reference_token
            row.group_token = group_token
            row.quality_score = quality.quality
            row.blur_score = quality.blur
            row.updated_at = utc_now()
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateIdentityError(identity_id, "reference token already in use") from e
            await session.refresh(row)

            logger.info(f"Rotated reference token for identity {identity_id}")
            return row.to_schema()

    @staticmethod
    async def _get_row(session: AsyncSession, identity_id: str) -> Optional[IdentityDB]:
        result = await session.execute(
            select(IdentityDB).where(IdentityDB.identity_id == identity_id)
        )
        return result.scalar_one_or_none()
