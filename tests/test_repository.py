import numpy as np
import pytest

from face_attendance.database import Database
from face_attendance.repository import FaceIdentityRepository, InMemoryIdentityStore, SqlIdentityStore
from face_attendance.types import RegistrationOutcome

from conftest import ALICE, BOB


def _outcome(identity_id, embedding):
    return RegistrationOutcome(
        identity_id=identity_id,
        embedding=embedding,
        frames_analyzed=12,
        valid_frames=10,
        quality_scores={"front": 0.9, "left": 0.7, "right": 0.0},
        liveness_score=10 / 12
    )


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'identities.db'}")
    await db.init()
    yield db
    await db.close()


async def test_upsert_and_read_back(database):
    async with database.session_maker() as session:
        await FaceIdentityRepository.upsert(session, _outcome("alice", ALICE))

    async with database.session_maker() as session:
        record = await FaceIdentityRepository.get_by_id(session, "alice")
        schema = FaceIdentityRepository.db_to_schema(record)

    assert schema.identity_id == "alice"
    assert schema.embedding_dimensions == 128
    assert schema.quality_scores == {"front": 0.9, "left": 0.7, "right": 0.0}
    assert schema.valid_frames == 10


async def test_upsert_replaces_reference(database):
    async with database.session_maker() as session:
        first = await FaceIdentityRepository.upsert(session, _outcome("alice", ALICE))
        registered_at = first.registered_at
        await FaceIdentityRepository.upsert(session, _outcome("alice", BOB))
        assert await FaceIdentityRepository.count(session) == 1

    store = SqlIdentityStore(database.session_maker)
    identity = await store.get_identity("alice")
    np.testing.assert_array_equal(identity.reference_embedding, BOB)
    assert identity.registered_at == registered_at


async def test_soft_delete(database):
    async with database.session_maker() as session:
        await FaceIdentityRepository.upsert(session, _outcome("alice", ALICE))
        assert await FaceIdentityRepository.soft_delete(session, "alice")
        assert not await FaceIdentityRepository.soft_delete(session, "alice")
        assert await FaceIdentityRepository.get_by_id(session, "alice") is None
        assert await FaceIdentityRepository.count(session) == 0
        assert await FaceIdentityRepository.count(session, active_only=False) == 1

    store = SqlIdentityStore(database.session_maker)
    assert await store.get_reference_embedding("alice") is None


async def test_reregistration_reactivates(database):
    async with database.session_maker() as session:
        await FaceIdentityRepository.upsert(session, _outcome("alice", ALICE))
        await FaceIdentityRepository.soft_delete(session, "alice")
        await FaceIdentityRepository.upsert(session, _outcome("alice", ALICE))

    store = SqlIdentityStore(database.session_maker)
    np.testing.assert_array_equal(await store.get_reference_embedding("alice"), ALICE)


async def test_in_memory_store():
    store = InMemoryIdentityStore({"alice": ALICE})
    np.testing.assert_array_equal(await store.get_reference_embedding("alice"), ALICE)
    assert await store.get_reference_embedding("bob") is None
    assert store.delete("alice")
    assert await store.get_reference_embedding("alice") is None
