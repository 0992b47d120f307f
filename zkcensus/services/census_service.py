"""
zk-census Census Service
Census lifecycle, proof registration and aggregate statistics
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from zkcensus.config import settings
from zkcensus.errors import (
    AgeRequirementNotMet, ArithmeticOverflow, CensusAlreadyExists, CensusError,
    CensusIdTooLong, CensusInactive, CensusNotFound, DescriptionTooLong,
    InvalidAgeRange, InvalidContinent, InvalidMerkleRoot, InvalidMinAge,
    InvalidTimestamp, InvalidVerificationKey, IpfsHashTooLong, NameTooLong,
    ProofVerificationFailed, Unauthorized,
)
from zkcensus.models import (
    AgeBracket, Census, CensusStats, Continent, NullifierEntry,
    MAX_CENSUS_ID_LENGTH, MAX_DESCRIPTION_LENGTH, MAX_IPFS_HASH_LENGTH,
    MAX_NAME_LENGTH, MERKLE_ROOT_LENGTH, NUM_BRACKETS, U64_MAX,
)
from zkcensus.services.crypto_service import (
    CryptoService, NUM_PUBLIC_SIGNALS, PublicSignals, VerificationKey, get_crypto_service,
)
from zkcensus.services.nullifier_service import (
    NullifierRegistry, census_commitment, get_nullifier_registry, validate_nullifier,
)
from zkcensus.utils.timestamps import system_clock, validate_timestamp

logger = logging.getLogger(__name__)


def _checked_increment(value: int) -> int:
    if value >= U64_MAX:
        raise ArithmeticOverflow()
    return value + 1


def _byte_length(value: str) -> int:
    return len(value.encode("utf-8"))


@dataclass(frozen=True)
class _CheckedSubmission:
    """A submission that passed the structural checks, ready for the verifier"""
    age: AgeBracket
    region: Continent
    now: int
    anchor_root: bytes
    signals: PublicSignals
    verification_key: VerificationKey


class CensusService:
    """Service for managing censuses and registrations"""

    def __init__(
        self,
        crypto_service: Optional[CryptoService] = None,
        nullifier_registry: Optional[NullifierRegistry] = None,
        clock: Optional[Callable[[], int]] = None,
        timestamp_tolerance: Optional[int] = None
    ):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.crypto_service = crypto_service or get_crypto_service()
        self.nullifier_registry = nullifier_registry or get_nullifier_registry()
        self.clock = clock or system_clock
        self.timestamp_tolerance = (
            timestamp_tolerance if timestamp_tolerance is not None
            else settings.TIMESTAMP_TOLERANCE_SECONDS
        )
        self.locks: Dict[str, asyncio.Lock] = {}

    def _get_or_create_lock(self, census_id: str) -> asyncio.Lock:
        """Per-census lock serializing writers of one census record"""
        if census_id not in self.locks:
            self.locks[census_id] = asyncio.Lock()
        return self.locks[census_id]

    async def _load_census(
        self,
        db: AsyncSession,
        census_id: str,
        for_update: bool = False
    ) -> Census:
        query = select(Census).where(Census.census_id == census_id)
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query.execution_options(populate_existing=True))
        census = result.scalar_one_or_none()
        if census is None:
            raise CensusNotFound(census_id)
        return census

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def initialize(
        self,
        db: AsyncSession,
        census_id: str,
        name: str,
        description: str,
        enable_location: bool,
        min_age: int,
        creator: str,
        verification_key: Optional[Dict[str, Any]] = None
    ) -> Census:
        """
        Create a new active census with zeroed aggregates

        Args:
            db: Database session
            census_id: Unique census identifier (max 32 bytes)
            name: Human-readable name (max 64 bytes)
            description: Description (max 256 bytes)
            enable_location: Whether continent counters are tracked
            min_age: Minimum age requirement, 0 for none
            creator: Caller identity recorded as the census authority
            verification_key: Optional snarkjs Groth16 key for this census

        Returns:
            The created Census
        """
        try:
            if _byte_length(census_id) > MAX_CENSUS_ID_LENGTH:
                raise CensusIdTooLong()
            if _byte_length(name) > MAX_NAME_LENGTH:
                raise NameTooLong()
            if _byte_length(description) > MAX_DESCRIPTION_LENGTH:
                raise DescriptionTooLong()
            if not 0 <= int(min_age) <= 255:
                raise InvalidMinAge()
            if verification_key is not None:
                vk = self.crypto_service.resolve_verification_key(verification_key)
                if vk.n_public != NUM_PUBLIC_SIGNALS:
                    raise InvalidVerificationKey(
                        f"Verification key has {vk.n_public} public inputs, "
                        f"census proofs have {NUM_PUBLIC_SIGNALS}"
                    )

            existing = await db.execute(
                select(Census.census_id).where(Census.census_id == census_id)
            )
            if existing.scalar_one_or_none() is not None:
                raise CensusAlreadyExists(f"Census already exists: {census_id}")

            now = self.clock()
            census = Census(
                census_id=census_id,
                name=name,
                description=description,
                creator=creator,
                enable_location=bool(enable_location),
                min_age=int(min_age),
                active=True,
                created_at=now,
                last_updated=now,
                total_members=0,
                age_distribution=[0] * NUM_BRACKETS,
                continent_distribution=[0] * NUM_BRACKETS,
                merkle_root=bytes(MERKLE_ROOT_LENGTH),
                ipfs_hash="",
                verification_key=verification_key,
            )
            db.add(census)
            try:
                await db.flush()
            except IntegrityError:
                raise CensusAlreadyExists(f"Census already exists: {census_id}")
            await db.commit()

            self.logger.info(f"Census initialized: {census_id} (creator={creator})")
            return census

        except CensusError as e:
            await db.rollback()
            self.logger.warning(f"Census initialization rejected: {e.code}: {e.message}")
            raise
        except Exception as e:
            await db.rollback()
            self.logger.error(f"Error initializing census {census_id}: {e}", exc_info=True)
            raise

    # ========================================================================
    # Registration
    # ========================================================================

    async def _check_submission(
        self,
        db: AsyncSession,
        census_id: str,
        nullifier: bytes,
        age_bracket: int,
        continent: int,
        timestamp: int
    ) -> _CheckedSubmission:
        """Structural checks that run before any pairing arithmetic"""
        census = await self._load_census(db, census_id)
        if not census.active:
            raise CensusInactive()

        now = self.clock()
        if not validate_timestamp(timestamp, now, self.timestamp_tolerance):
            raise InvalidTimestamp()

        try:
            age = AgeBracket.from_index(age_bracket)
        except ValueError:
            raise InvalidAgeRange()
        if census.min_age > 0 and age == AgeBracket.UNDER_18:
            raise AgeRequirementNotMet()

        try:
            region = Continent.from_index(continent)
        except ValueError:
            raise InvalidContinent()

        anchor_root = bytes(census.merkle_root)
        return _CheckedSubmission(
            age=age,
            region=region,
            now=now,
            anchor_root=anchor_root,
            signals=PublicSignals(
                nullifier=nullifier,
                age_bracket=age.to_index(),
                continent=region.to_index(),
                census_commitment=census_commitment(census_id, anchor_root),
            ),
            verification_key=self.crypto_service.resolve_verification_key(
                census.verification_key
            ),
        )

    async def _verify_proof(self, proof: bytes, submission: _CheckedSubmission) -> bool:
        # CPU-bound pairing arithmetic runs in a worker thread
        return await asyncio.to_thread(
            self.crypto_service.verify, proof, submission.signals, submission.verification_key
        )

    async def verify_submission(
        self,
        db: AsyncSession,
        census_id: str,
        nullifier: bytes,
        age_bracket: int,
        continent: int,
        proof: bytes,
        timestamp: int
    ) -> bool:
        """
        Dry run of register: every check up to and including the proof

        Nothing is claimed or counted, so a True result does not reserve
        the nullifier.

        Returns:
            True iff the proof verifies for this census and these signals
        """
        nullifier = validate_nullifier(nullifier)
        submission = await self._check_submission(
            db, census_id, nullifier, age_bracket, continent, timestamp
        )
        is_valid = await self._verify_proof(proof, submission)
        self.logger.info(f"Dry-run verification for census {census_id}: valid={is_valid}")
        return is_valid

    async def is_nullifier_used(self, db: AsyncSession, census_id: str, nullifier: bytes) -> bool:
        """Whether a nullifier has already registered in this census"""
        nullifier = validate_nullifier(nullifier)
        await self._load_census(db, census_id)
        return await self.nullifier_registry.is_claimed(db, census_id, nullifier)

    async def register(
        self,
        db: AsyncSession,
        census_id: str,
        nullifier: bytes,
        age_bracket: int,
        continent: int,
        proof: bytes,
        timestamp: int
    ) -> int:
        """
        Register one participant

        This is the CRITICAL registration pipeline:
        1. Census must exist and be active
        2. Timestamp within the tolerance window of the trusted clock
        3. Age bracket and continent in range, minimum age respected
        4. Groth16 proof verified against the census key and commitment
        5. Nullifier claimed atomically (rejects double registration)
        6. Aggregates incremented with overflow checks, then committed

        Cheap checks run before the pairing check, which runs before the
        irreversible claim, so a bad proof never consumes a nullifier.

        Args:
            db: Database session
            census_id: Census to register in
            nullifier: 32-byte public nullifier
            age_bracket: AgeBracket index (0-6)
            continent: Continent index (0-6)
            proof: 256-byte Groth16 proof
            timestamp: Client timestamp (unix seconds)

        Returns:
            The member index (total_members before this registration)
        """
        claimed = False
        try:
            nullifier = validate_nullifier(nullifier)
            submission = await self._check_submission(
                db, census_id, nullifier, age_bracket, continent, timestamp
            )
            age, region, now = submission.age, submission.region, submission.now
            anchor_root = submission.anchor_root

            if not await self._verify_proof(proof, submission):
                raise ProofVerificationFailed()

            async with self._get_or_create_lock(census_id):
                census = await self._load_census(db, census_id, for_update=True)
                if not census.active:
                    raise CensusInactive()
                if bytes(census.merkle_root) != anchor_root:
                    raise ProofVerificationFailed(
                        "Census commitment changed during verification"
                    )

                index = int(census.total_members)
                await self.nullifier_registry.claim(db, census_id, nullifier, index, now)
                claimed = True

                ages = [int(v) for v in census.age_distribution]
                ages[age] = _checked_increment(ages[age])
                continents = [int(v) for v in census.continent_distribution]
                if census.enable_location:
                    continents[region] = _checked_increment(continents[region])

                census.total_members = _checked_increment(index)
                census.age_distribution = ages
                census.continent_distribution = continents
                census.last_updated = now

                await db.commit()

            self.logger.info(
                f"Proof submitted for census: {census_id}, "
                f"nullifier={nullifier.hex()[:16]}..., total members: {index + 1}"
            )
            return index

        except CensusError as e:
            await db.rollback()
            if claimed:
                await self.nullifier_registry.release(census_id, nullifier)
            self.logger.warning(f"Registration rejected for census {census_id}: {e.code}")
            raise
        except Exception as e:
            await db.rollback()
            if claimed:
                await self.nullifier_registry.release(census_id, nullifier)
            self.logger.error(f"Error registering in census {census_id}: {e}", exc_info=True)
            raise

    # ========================================================================
    # Administration (creator only)
    # ========================================================================

    async def update_anchor(
        self,
        db: AsyncSession,
        census_id: str,
        new_root: bytes,
        ipfs_hash: str,
        caller: str
    ) -> Census:
        """Replace the Merkle root and IPFS pointer of the membership tree"""
        try:
            async with self._get_or_create_lock(census_id):
                census = await self._load_census(db, census_id, for_update=True)
                if census.creator != caller:
                    raise Unauthorized()
                if _byte_length(ipfs_hash) > MAX_IPFS_HASH_LENGTH:
                    raise IpfsHashTooLong()
                if not isinstance(new_root, (bytes, bytearray)) or len(new_root) != MERKLE_ROOT_LENGTH:
                    raise InvalidMerkleRoot()

                census.merkle_root = bytes(new_root)
                census.ipfs_hash = ipfs_hash
                census.last_updated = self.clock()
                await db.commit()

            self.logger.info(f"Merkle root updated for census: {census_id}, IPFS: {ipfs_hash}")
            return census

        except CensusError as e:
            await db.rollback()
            self.logger.warning(f"Merkle root update rejected for census {census_id}: {e.code}")
            raise
        except Exception as e:
            await db.rollback()
            self.logger.error(f"Error updating Merkle root for census {census_id}: {e}", exc_info=True)
            raise

    async def close(self, db: AsyncSession, census_id: str, caller: str) -> Census:
        """Deactivate a census; closing a closed census is a no-op"""
        try:
            async with self._get_or_create_lock(census_id):
                census = await self._load_census(db, census_id, for_update=True)
                if census.creator != caller:
                    raise Unauthorized()
                if not census.active:
                    await db.commit()
                    self.logger.info(f"Census already closed: {census_id}")
                    return census

                census.active = False
                census.last_updated = self.clock()
                await db.commit()

            self.logger.info(f"Census closed: {census_id}")
            return census

        except CensusError as e:
            await db.rollback()
            self.logger.warning(f"Census close rejected for {census_id}: {e.code}")
            raise
        except Exception as e:
            await db.rollback()
            self.logger.error(f"Error closing census {census_id}: {e}", exc_info=True)
            raise

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_census(self, db: AsyncSession, census_id: str) -> Census:
        return await self._load_census(db, census_id)

    async def get_stats(self, db: AsyncSession, census_id: str) -> CensusStats:
        """Snapshot of a census' aggregates"""
        census = await self._load_census(db, census_id)
        return CensusStats.from_census(census)

    async def list_censuses(self, db: AsyncSession, active_only: bool = False) -> List[Census]:
        query = select(Census).order_by(Census.created_at.desc(), Census.census_id)
        if active_only:
            query = query.where(Census.active.is_(True))
        result = await db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_age_distribution(self, db: AsyncSession, census_id: str) -> Dict[str, int]:
        stats = await self.get_stats(db, census_id)
        return {bracket.name: stats.age_distribution[bracket] for bracket in AgeBracket}

    async def get_location_distribution(self, db: AsyncSession, census_id: str) -> Dict[str, int]:
        stats = await self.get_stats(db, census_id)
        return {region.name: stats.continent_distribution[region] for region in Continent}

    async def get_global_stats(self, db: AsyncSession) -> Dict[str, int]:
        """Counts across all censuses"""
        total_censuses = await db.scalar(select(func.count()).select_from(Census))
        active_censuses = await db.scalar(
            select(func.count()).select_from(Census).where(Census.active.is_(True))
        )
        total_registrations = await db.scalar(select(func.count()).select_from(NullifierEntry))
        return {
            "total_censuses": total_censuses or 0,
            "active_censuses": active_censuses or 0,
            "total_registrations": total_registrations or 0,
        }


# Global census service instance
_census_service: Optional[CensusService] = None


def get_census_service() -> CensusService:
    """Get global census service instance"""
    global _census_service
    if _census_service is None:
        _census_service = CensusService()
    return _census_service
