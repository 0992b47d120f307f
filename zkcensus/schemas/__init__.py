"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from zkcensus.errors import CensusError, InvalidMerkleRoot, InvalidNullifier, InvalidProof


def decode_hex(value: str, error: Type[CensusError]) -> bytes:
    """Hex string (optional 0x prefix) to bytes, raising the given census error"""
    text = value[2:] if value[:2].lower() == "0x" else value
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise error("Value must be hex-encoded")


# Base schemas
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CurrentCaller(BaseModel):
    """Authenticated caller identity"""
    identity: str


# Census schemas
# Length limits are byte limits enforced by the service so each violation
# reports its own error code.
class CensusCreate(BaseModel):
    census_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    enable_location: bool = True
    min_age: int = 0
    verification_key: Optional[Dict[str, Any]] = None


class CensusResponse(BaseSchema):
    census_id: str
    name: str
    description: str
    creator: str
    enable_location: bool
    min_age: int
    active: bool
    created_at: int
    last_updated: int
    total_members: int
    merkle_root: str
    ipfs_hash: str

    @field_validator("merkle_root", mode="before")
    @classmethod
    def encode_root(cls, v):
        return v.hex() if isinstance(v, (bytes, bytearray)) else v


class CensusListResponse(BaseModel):
    censuses: List[CensusResponse]
    count: int


# Registration schemas
class ProofSubmission(BaseModel):
    nullifier: str = Field(..., description="32-byte nullifier, hex")
    age_bracket: int = Field(..., strict=True, description="Age bracket index 0-6")
    continent: int = Field(..., strict=True, description="Continent index 0-6")
    proof: str = Field(..., description="256-byte Groth16 proof, hex")
    timestamp: int

    def nullifier_bytes(self) -> bytes:
        return decode_hex(self.nullifier, InvalidNullifier)

    def proof_bytes(self) -> bytes:
        return decode_hex(self.proof, InvalidProof)


class CensusStatsResponse(BaseModel):
    total_members: int
    age_distribution: List[int]
    continent_distribution: List[int]
    last_updated: int


class ProofSubmissionResponse(BaseModel):
    success: bool
    index: int
    stats: CensusStatsResponse


class ProofVerifyResponse(BaseModel):
    success: bool
    valid: bool


class NullifierStatusResponse(BaseModel):
    census_id: str
    nullifier: str
    exists: bool


class DistributionResponse(BaseModel):
    census_id: str
    distribution: Dict[str, int]
    total: int


# Administration schemas
class MerkleRootUpdate(BaseModel):
    new_root: str = Field(..., description="32-byte Merkle root, hex")
    ipfs_hash: str = ""

    def root_bytes(self) -> bytes:
        return decode_hex(self.new_root, InvalidMerkleRoot)


class AckResponse(BaseModel):
    success: bool
    census_id: str
    message: Optional[str] = None


class GlobalStatsResponse(BaseModel):
    total_censuses: int
    active_censuses: int
    total_registrations: int


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    crypto_library: str
    database: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: str
