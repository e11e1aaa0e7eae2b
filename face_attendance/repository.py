"""
Face Identity Repository

Database operations for the face_identities table using SQLAlchemy async,
plus the IdentityStore implementations the pipeline reads reference
embeddings from.
"""
from datetime import datetime
from typing import Dict, Optional
import numpy as np
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import logging

from face_attendance.models import FaceIdentityDB
from face_attendance.schemas import IdentityRecord
from face_attendance.types import RegistrationOutcome, StoredIdentity

logger = logging.getLogger(__name__)


class FaceIdentityRepository:
    """
    Repository class for face_identities database operations.

    All methods are async and require an AsyncSession.
    """

    @staticmethod
    async def get_by_id(session: AsyncSession, identity_id: str) -> Optional[FaceIdentityDB]:
        """Get an active identity by id."""
        result = await session.execute(
            select(FaceIdentityDB)
            .where(FaceIdentityDB.identity_id == str(identity_id))
            .where(FaceIdentityDB.is_active == True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def upsert(session: AsyncSession, outcome: RegistrationOutcome) -> FaceIdentityDB:
        """
        Store a registration result, replacing any previous reference embedding.

        Args:
            session: Database session
            outcome: Successful registration outcome

        Returns:
            Stored FaceIdentityDB instance
        """
        now = datetime.utcnow()
        db_record = await session.get(FaceIdentityDB, outcome.identity_id)

        if db_record is None:
            db_record = FaceIdentityDB(identity_id=outcome.identity_id, registered_at=now)
            session.add(db_record)

        db_record.embedding = [float(v) for v in outcome.embedding]
        db_record.quality_scores = dict(outcome.quality_scores)
        db_record.frames_analyzed = outcome.frames_analyzed
        db_record.valid_frames = outcome.valid_frames
        db_record.is_active = True
        db_record.updated_at = now

        await session.commit()
        await session.refresh(db_record)

        logger.info(f"Stored reference embedding for {outcome.identity_id}")
        return db_record

    @staticmethod
    async def count(session: AsyncSession, active_only: bool = True) -> int:
        """Get total count of registered identities."""
        query = select(func.count(FaceIdentityDB.identity_id))
        if active_only:
            query = query.where(FaceIdentityDB.is_active == True)

        result = await session.execute(query)
        return result.scalar() or 0

    @staticmethod
    async def soft_delete(session: AsyncSession, identity_id: str) -> bool:
        """
        Soft delete an identity by setting is_active to False.

        Returns:
            True if deleted, False if not found
        """
        result = await session.execute(
            update(FaceIdentityDB)
            .where(FaceIdentityDB.identity_id == str(identity_id))
            .where(FaceIdentityDB.is_active == True)
            .values(is_active=False, updated_at=datetime.utcnow())
        )
        await session.commit()

        if result.rowcount > 0:
            logger.info(f"Soft deleted identity {identity_id}")
            return True
        return False

    @staticmethod
    def db_to_domain(db_record: FaceIdentityDB) -> StoredIdentity:
        return StoredIdentity(
            identity_id=db_record.identity_id,
            reference_embedding=np.asarray(db_record.embedding, dtype=np.float32),
            registered_at=db_record.registered_at
        )

    @staticmethod
    def db_to_schema(db_record: FaceIdentityDB) -> IdentityRecord:
        """Convert database model to Pydantic schema."""
        return IdentityRecord(
            identity_id=db_record.identity_id,
            embedding_dimensions=len(db_record.embedding or []),
            quality_scores=db_record.quality_scores or {},
            frames_analyzed=db_record.frames_analyzed,
            valid_frames=db_record.valid_frames,
            registered_at=db_record.registered_at,
            updated_at=db_record.updated_at
        )


class SqlIdentityStore:
    """IdentityStore reading reference embeddings from the database."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def get_identity(self, identity_id: str) -> Optional[StoredIdentity]:
        async with self._session_maker() as session:
            db_record = await FaceIdentityRepository.get_by_id(session, identity_id)
        if db_record is None or not db_record.embedding:
            return None
        return FaceIdentityRepository.db_to_domain(db_record)

    async def get_reference_embedding(self, identity_id: str) -> Optional[np.ndarray]:
        identity = await self.get_identity(identity_id)
        return identity.reference_embedding if identity else None


class InMemoryIdentityStore:
    """IdentityStore over a plain dict, for embedding the pipeline without a database."""

    def __init__(self, identities: Dict[str, np.ndarray] = None):
        self._identities: Dict[str, StoredIdentity] = {}
        for identity_id, embedding in (identities or {}).items():
            self.save(identity_id, embedding)

    def save(self, identity_id: str, embedding) -> StoredIdentity:
        identity = StoredIdentity(
            identity_id=str(identity_id),
            reference_embedding=np.asarray(embedding, dtype=np.float32),
            registered_at=datetime.utcnow()
        )
        self._identities[identity.identity_id] = identity
        return identity

    def delete(self, identity_id: str) -> bool:
        return self._identities.pop(str(identity_id), None) is not None

    async def get_reference_embedding(self, identity_id: str) -> Optional[np.ndarray]:
        identity = self._identities.get(str(identity_id))
        return identity.reference_embedding if identity else None
