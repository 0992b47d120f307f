"""
Shared fixtures: a throwaway SQLite database, a fixed clock and a known
Groth16 setup
"""

import os
import tempfile

# Settings are read once on import; point them at a scratch database first
_TEST_DIR = tempfile.mkdtemp(prefix="zkcensus-test-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ.pop("REDIS_URL", None)
os.environ.pop("VERIFICATION_KEY_PATH", None)

import pytest

from zkcensus.database import AsyncSessionLocal, engine, reset_db
from zkcensus.services.census_service import CensusService
from zkcensus.services.crypto_service import CryptoService, PublicSignals
from zkcensus.services.nullifier_service import (
    NullifierRegistry, census_commitment, derive_nullifier,
)

from groth16_setup import TrustedSetup

NOW = 1_700_000_000
CREATOR = "creator-pubkey-0001"


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def groth16_setup():
    """Known setup shared by every test; building the key is slow"""
    return TrustedSetup()


@pytest.fixture(scope="session")
def verification_key(groth16_setup):
    return groth16_setup.verification_key_json()


@pytest.fixture(scope="session")
def crypto_service():
    return CryptoService()


@pytest.fixture
async def db_session():
    """Provide a clean database session for each test"""
    await reset_db()
    async with AsyncSessionLocal() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def census_service(crypto_service):
    """Fresh service (own locks, no Redis) with the clock pinned at NOW"""
    return CensusService(
        crypto_service=crypto_service,
        nullifier_registry=NullifierRegistry(),
        clock=lambda: NOW,
    )


@pytest.fixture
async def census(db_session, census_service, verification_key):
    """Open census "c1" with no age requirement"""
    return await census_service.initialize(
        db_session,
        census_id="c1",
        name="Test census",
        description="Census for tests",
        enable_location=True,
        min_age=0,
        creator=CREATOR,
        verification_key=verification_key,
    )


@pytest.fixture
def make_submission(groth16_setup):
    """
    Build register() keyword arguments carrying a genuine proof

    Usage:
        kwargs = make_submission("c1", b"secret", age_bracket=1, continent=2)
        await census_service.register(db, **kwargs)
    """
    def _make(
        census_id: str,
        secret: bytes,
        age_bracket: int = 1,
        continent: int = 2,
        merkle_root: bytes = bytes(32),
        timestamp: int = NOW
    ):
        nullifier = derive_nullifier(secret, census_id)
        signals = PublicSignals(
            nullifier=nullifier,
            age_bracket=age_bracket,
            continent=continent,
            census_commitment=census_commitment(census_id, merkle_root),
        )
        return {
            "census_id": census_id,
            "nullifier": nullifier,
            "age_bracket": age_bracket,
            "continent": continent,
            "proof": groth16_setup.prove(signals),
            "timestamp": timestamp,
        }
    return _make


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def creator():
    return CREATOR
