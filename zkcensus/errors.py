"""
zk-census Error Taxonomy

Every failure of a ledger operation is one of these kinds. Each carries a
stable machine-readable ``code`` and the HTTP status the API reports it with.
"""

from typing import Any, Dict


class CensusError(Exception):
    """Base class for all census errors"""

    code = "CENSUS_ERROR"
    status_code = 500
    default_message = "Census operation failed"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code}


# ============================================================================
# Input validation
# ============================================================================

class CensusIdTooLong(CensusError):
    code = "CENSUS_ID_TOO_LONG"
    status_code = 400
    default_message = "Census ID too long (max 32 bytes)"


class NameTooLong(CensusError):
    code = "NAME_TOO_LONG"
    status_code = 400
    default_message = "Name too long (max 64 bytes)"


class DescriptionTooLong(CensusError):
    code = "DESCRIPTION_TOO_LONG"
    status_code = 400
    default_message = "Description too long (max 256 bytes)"


class InvalidMinAge(CensusError):
    code = "INVALID_MIN_AGE"
    status_code = 400
    default_message = "Minimum age must be between 0 and 255"


class IpfsHashTooLong(CensusError):
    code = "IPFS_HASH_TOO_LONG"
    status_code = 400
    default_message = "IPFS hash too long (max 64 bytes)"


class InvalidMerkleRoot(CensusError):
    code = "INVALID_MERKLE_ROOT"
    status_code = 400
    default_message = "Merkle root must be exactly 32 bytes"


class InvalidNullifier(CensusError):
    code = "INVALID_NULLIFIER"
    status_code = 400
    default_message = "Nullifier must be exactly 32 bytes"


class InvalidTimestamp(CensusError):
    code = "INVALID_TIMESTAMP"
    status_code = 400
    default_message = "Timestamp too old or in future"


class InvalidAgeRange(CensusError):
    code = "INVALID_AGE_RANGE"
    status_code = 400
    default_message = "Invalid age range"


class InvalidContinent(CensusError):
    code = "INVALID_CONTINENT"
    status_code = 400
    default_message = "Invalid continent code"


class AgeRequirementNotMet(CensusError):
    code = "AGE_REQUIREMENT_NOT_MET"
    status_code = 400
    default_message = "Age requirement not met"


# ============================================================================
# Cryptographic rejection
# ============================================================================

class ProofVerificationFailed(CensusError):
    code = "PROOF_VERIFICATION_FAILED"
    status_code = 400
    default_message = "Proof verification failed"


class InvalidProof(ProofVerificationFailed):
    code = "INVALID_PROOF"
    default_message = "Invalid proof data"


class InvalidVerificationKey(CensusError):
    code = "INVALID_VERIFICATION_KEY"
    status_code = 400
    default_message = "Invalid verification key"


# ============================================================================
# Identity, uniqueness and lifecycle
# ============================================================================

class DuplicateNullifier(CensusError):
    code = "DUPLICATE_NULLIFIER"
    status_code = 409
    default_message = "Duplicate nullifier - already registered"


class CensusAlreadyExists(CensusError):
    code = "CENSUS_ALREADY_EXISTS"
    status_code = 409
    default_message = "A census with this ID already exists"


class CensusNotFound(CensusError):
    code = "CENSUS_NOT_FOUND"
    status_code = 404
    default_message = "Census not found"

    def __init__(self, census_id: str = None):
        super().__init__(f"Census not found: {census_id}" if census_id else None)


class CensusInactive(CensusError):
    code = "CENSUS_INACTIVE"
    status_code = 409
    default_message = "Census is not active"


# ============================================================================
# Authorization
# ============================================================================

class Unauthorized(CensusError):
    code = "UNAUTHORIZED"
    status_code = 403
    default_message = "Unauthorized - only creator can perform this action"


# ============================================================================
# Arithmetic
# ============================================================================

class ArithmeticOverflow(CensusError):
    code = "ARITHMETIC_OVERFLOW"
    status_code = 500
    default_message = "Arithmetic overflow"
