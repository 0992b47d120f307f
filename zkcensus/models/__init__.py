"""
zk-census Database Models
Census records, nullifier entries and the bracket enumerations
"""

import enum
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import (
    Column, String, Boolean, BigInteger, Integer, LargeBinary, JSON,
    ForeignKey, Index, PrimaryKeyConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from zkcensus.database import Base


# ============================================================================
# Limits
# ============================================================================

MAX_CENSUS_ID_LENGTH = 32
MAX_NAME_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 256
MAX_IPFS_HASH_LENGTH = 64
MERKLE_ROOT_LENGTH = 32
NULLIFIER_LENGTH = 32
NUM_BRACKETS = 7
U64_MAX = 2 ** 64 - 1


# ============================================================================
# Enumerations
# ============================================================================

class AgeBracket(enum.IntEnum):
    """Age brackets; slot index in Census.age_distribution"""
    UNDER_18 = 0
    AGE_18_24 = 1
    AGE_25_34 = 2
    AGE_35_44 = 3
    AGE_45_54 = 4
    AGE_55_64 = 5
    AGE_65_PLUS = 6

    @classmethod
    def from_index(cls, index: int) -> "AgeBracket":
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < NUM_BRACKETS:
            raise ValueError(f"Invalid age bracket index: {index}")
        return cls(index)

    def to_index(self) -> int:
        return int(self)

    @classmethod
    def from_age(cls, age: int) -> "AgeBracket":
        if age < 0:
            raise ValueError(f"Invalid age: {age}")
        if age <= 17:
            return cls.UNDER_18
        if age <= 24:
            return cls.AGE_18_24
        if age <= 34:
            return cls.AGE_25_34
        if age <= 44:
            return cls.AGE_35_44
        if age <= 54:
            return cls.AGE_45_54
        if age <= 64:
            return cls.AGE_55_64
        return cls.AGE_65_PLUS


class Continent(enum.IntEnum):
    """Continents; slot index in Census.continent_distribution"""
    AFRICA = 0
    ASIA = 1
    EUROPE = 2
    NORTH_AMERICA = 3
    SOUTH_AMERICA = 4
    OCEANIA = 5
    ANTARCTICA = 6

    @classmethod
    def from_index(cls, index: int) -> "Continent":
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < NUM_BRACKETS:
            raise ValueError(f"Invalid continent index: {index}")
        return cls(index)

    def to_index(self) -> int:
        return int(self)


def age_bracket_from_birth_year(birth_year: int, current_year: int) -> Optional[AgeBracket]:
    """Bracket for someone born in birth_year, or None if birth_year is in the future"""
    if birth_year > current_year:
        return None
    return AgeBracket.from_age(current_year - birth_year)


# ============================================================================
# Column types
# ============================================================================

class UInt64(TypeDecorator):
    """
    Unsigned 64-bit counter

    SQL BIGINT is signed, so values are persisted as their decimal string to
    keep the full u64 range lossless on every backend.
    """
    impl = String(20)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = int(value)
        if not 0 <= value <= U64_MAX:
            raise ValueError(f"Value out of u64 range: {value}")
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


def _zero_distribution() -> List[int]:
    return [0] * NUM_BRACKETS


# ============================================================================
# Table 1: Censuses
# ============================================================================

class Census(Base):
    """
    One record per eligibility campaign

    Administrative fields (merkle_root, ipfs_hash, active) are owned by the
    creator. Aggregate fields are updated by every accepted registration and
    always satisfy total_members == sum(age_distribution).
    """
    __tablename__ = "censuses"

    census_id = Column(String(MAX_CENSUS_ID_LENGTH), primary_key=True)
    name = Column(String(MAX_NAME_LENGTH), nullable=False)
    description = Column(String(MAX_DESCRIPTION_LENGTH), nullable=False, default="")
    creator = Column(String(128), nullable=False, index=True)
    enable_location = Column(Boolean, nullable=False, default=True)
    min_age = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(BigInteger, nullable=False)
    last_updated = Column(BigInteger, nullable=False)

    # Aggregates
    total_members = Column(UInt64(), nullable=False, default=0)
    age_distribution = Column(JSON, nullable=False, default=_zero_distribution)
    continent_distribution = Column(JSON, nullable=False, default=_zero_distribution)

    # External anchor
    merkle_root = Column(LargeBinary(MERKLE_ROOT_LENGTH), nullable=False,
                         default=bytes(MERKLE_ROOT_LENGTH))
    ipfs_hash = Column(String(MAX_IPFS_HASH_LENGTH), nullable=False, default="")

    # snarkjs verification_key.json published with the census
    verification_key = Column(JSON, nullable=True)

    # Relationships
    nullifiers = relationship("NullifierEntry", back_populates="census")

    __table_args__ = (
        Index('idx_census_active_created', 'active', 'created_at'),
    )

    def __repr__(self):
        return (f"<Census(census_id='{self.census_id}', active={self.active}, "
                f"total_members={self.total_members})>")


# ============================================================================
# Table 2: Nullifier entries
# ============================================================================

class NullifierEntry(Base):
    """
    One record per accepted registration

    CRITICAL: (census_id, nullifier) is the primary key. The INSERT of this
    row is the atomic claim; a second INSERT of the same key fails.
    """
    __tablename__ = "nullifier_entries"

    census_id = Column(String(MAX_CENSUS_ID_LENGTH),
                       ForeignKey('censuses.census_id', ondelete='CASCADE'),
                       nullable=False)
    nullifier = Column(LargeBinary(NULLIFIER_LENGTH), nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    index = Column("member_index", UInt64(), nullable=False)

    census = relationship("Census", back_populates="nullifiers")

    __table_args__ = (
        PrimaryKeyConstraint('census_id', 'nullifier', name='pk_nullifier_census_nullifier'),
        Index('idx_nullifier_census_timestamp', 'census_id', 'timestamp'),
    )

    def __repr__(self):
        return (f"<NullifierEntry(census_id='{self.census_id}', "
                f"nullifier='{self.nullifier.hex()[:16]}...', index={self.index})>")


# ============================================================================
# Projections
# ============================================================================

@dataclass(frozen=True)
class CensusStats:
    """Read-only snapshot of a census' aggregates"""
    total_members: int
    age_distribution: List[int] = field(default_factory=_zero_distribution)
    continent_distribution: List[int] = field(default_factory=_zero_distribution)
    last_updated: int = 0

    @classmethod
    def from_census(cls, census: Census) -> "CensusStats":
        return cls(
            total_members=int(census.total_members),
            age_distribution=[int(v) for v in census.age_distribution],
            continent_distribution=[int(v) for v in census.continent_distribution],
            last_updated=int(census.last_updated),
        )
