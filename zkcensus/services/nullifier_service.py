"""
zk-census Nullifier Service
Nullifier derivation and the atomic per-census nullifier registry
"""

import logging
from typing import Optional

import redis.asyncio as redis
from Crypto.Hash import keccak
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from zkcensus.config import settings
from zkcensus.errors import DuplicateNullifier, InvalidNullifier
from zkcensus.models import NullifierEntry, NULLIFIER_LENGTH

logger = logging.getLogger(__name__)

# BN254 scalar field order (r)
SNARK_SCALAR_FIELD = 21888242871839275222246405745257275088548364400416034343698204186575808495617


# ============================================================================
# Hashing
# ============================================================================

def keccak256(data: bytes) -> bytes:
    """Keccak-256 digest (the pre-standard SHA-3 padding used by Ethereum/Solana)"""
    return keccak.new(data=data, digest_bits=256).digest()


def derive_nullifier(secret: bytes, census_id: str) -> bytes:
    """
    Derive the public nullifier for a secret in one census

    The same (secret, census_id) always yields the same 32 bytes; the same
    secret in two censuses yields unlinkable values.
    """
    return keccak256(bytes(secret) + census_id.encode("utf-8"))


def census_commitment(census_id: str, merkle_root: bytes) -> int:
    """Public signal binding a proof to a census and its current membership root"""
    digest = keccak256(census_id.encode("utf-8") + bytes(merkle_root))
    return int.from_bytes(digest, "big") % SNARK_SCALAR_FIELD


def to_field_element(value: bytes) -> int:
    """Big-endian bytes reduced into the BN254 scalar field"""
    return int.from_bytes(bytes(value), "big") % SNARK_SCALAR_FIELD


def validate_nullifier(nullifier: bytes) -> bytes:
    if not isinstance(nullifier, (bytes, bytearray)) or len(nullifier) != NULLIFIER_LENGTH:
        raise InvalidNullifier()
    return bytes(nullifier)


# ============================================================================
# Registry
# ============================================================================

class NullifierRegistry:
    """
    At-most-once admission per (census_id, nullifier)

    The claim is an INSERT against the composite primary key of
    nullifier_entries; the database rejects a second one. When Redis is
    configured, a SET NX reservation in front of the INSERT turns away
    replays across worker processes before they reach the database.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.redis_client = redis_client

    async def init_redis(self):
        """Initialize Redis connection if REDIS_URL is configured"""
        if self.redis_client is None and settings.REDIS_URL:
            self.redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
            self.logger.info("Redis connection initialized")

    async def close_redis(self):
        """Close Redis connection"""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            self.logger.info("Redis connection closed")

    @staticmethod
    def _redis_key(census_id: str, nullifier: bytes) -> str:
        return f"nullifier:{census_id}:{nullifier.hex()}"

    async def claim(
        self,
        db: AsyncSession,
        census_id: str,
        nullifier: bytes,
        index: int,
        timestamp: int
    ) -> NullifierEntry:
        """
        Atomically claim a nullifier inside the caller's transaction

        Args:
            db: Session holding the registration transaction
            census_id: Census the nullifier belongs to
            nullifier: 32-byte nullifier
            index: Member count before this registration
            timestamp: Trusted registration time

        Returns:
            The flushed NullifierEntry

        Raises:
            DuplicateNullifier: if the key was already claimed
        """
        nullifier = validate_nullifier(nullifier)

        if self.redis_client:
            # First request wins
            reserved = await self.redis_client.set(
                self._redis_key(census_id, nullifier),
                "claimed",
                nx=True,
                ex=settings.REDIS_NULLIFIER_TTL
            )
            if not reserved:
                self.logger.warning(
                    f"Nullifier {nullifier.hex()[:16]}... already reserved in census {census_id}"
                )
                raise DuplicateNullifier()

        entry = NullifierEntry(
            census_id=census_id,
            nullifier=nullifier,
            timestamp=timestamp,
            index=index,
        )
        db.add(entry)
        try:
            await db.flush()
        except IntegrityError:
            await self.release(census_id, nullifier)
            self.logger.warning(
                f"Nullifier {nullifier.hex()[:16]}... already claimed in census {census_id}"
            )
            raise DuplicateNullifier()

        return entry

    async def release(self, census_id: str, nullifier: bytes):
        """Drop the Redis reservation of a claim whose transaction did not commit"""
        if self.redis_client:
            await self.redis_client.delete(self._redis_key(census_id, nullifier))

    async def get_entry(
        self,
        db: AsyncSession,
        census_id: str,
        nullifier: bytes
    ) -> Optional[NullifierEntry]:
        result = await db.execute(
            select(NullifierEntry).where(
                NullifierEntry.census_id == census_id,
                NullifierEntry.nullifier == bytes(nullifier)
            )
        )
        return result.scalar_one_or_none()

    async def is_claimed(self, db: AsyncSession, census_id: str, nullifier: bytes) -> bool:
        return await self.get_entry(db, census_id, nullifier) is not None


# Global registry instance
_nullifier_registry: Optional[NullifierRegistry] = None


def get_nullifier_registry() -> NullifierRegistry:
    """Get global nullifier registry instance"""
    global _nullifier_registry
    if _nullifier_registry is None:
        _nullifier_registry = NullifierRegistry()
    return _nullifier_registry
