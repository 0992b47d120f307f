"""
zk-census Crypto Service
Groth16 proof verification over BN254 (alt_bn128) using py_ecc

Wire format of a proof (256 bytes, every coordinate a 32-byte big-endian
integer, G2 coordinates in EIP-197 order with the imaginary part first):

    A.x | A.y | B.x.c1 | B.x.c0 | B.y.c1 | B.y.c0 | C.x | C.y

Public signals, in circuit order:

    [nullifier mod r, age_bracket, continent, census_commitment]
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from py_ecc.optimized_bn128 import (
    FQ, FQ2, FQ12, add, b, b2, curve_order, field_modulus,
    final_exponentiate, is_on_curve, multiply, neg, pairing,
)

from zkcensus.config import settings
from zkcensus.errors import InvalidProof, InvalidVerificationKey
from zkcensus.services.nullifier_service import to_field_element

logger = logging.getLogger(__name__)

PROOF_LENGTH = 256
COORDINATE_LENGTH = 32
NUM_PUBLIC_SIGNALS = 4

G1Affine = Tuple[int, int]
G2Affine = Tuple[Tuple[int, int], Tuple[int, int]]


# ============================================================================
# Point helpers
# ============================================================================

def _is_infinity(pt) -> bool:
    return pt[2] == pt[2].zero()


def _g1_point(x: int, y: int):
    """Projective G1 point from affine coordinates; raises InvalidProof if off-curve"""
    if not (0 <= x < field_modulus and 0 <= y < field_modulus):
        raise InvalidProof("G1 coordinate out of field range")
    if x == 0 and y == 0:
        raise InvalidProof("G1 point at infinity")
    pt = (FQ(x), FQ(y), FQ.one())
    if not is_on_curve(pt, b):
        raise InvalidProof("G1 point not on curve")
    return pt


def _g2_point(x: Tuple[int, int], y: Tuple[int, int]):
    """Projective G2 point from (c0, c1) coordinate pairs; checks curve and subgroup"""
    for coord in (*x, *y):
        if not 0 <= coord < field_modulus:
            raise InvalidProof("G2 coordinate out of field range")
    if not any((*x, *y)):
        raise InvalidProof("G2 point at infinity")
    pt = (FQ2([x[0], x[1]]), FQ2([y[0], y[1]]), FQ2.one())
    if not is_on_curve(pt, b2):
        raise InvalidProof("G2 point not on curve")
    # The twist has a large cofactor; only the prime-order subgroup is valid
    if not _is_infinity(multiply(pt, curve_order)):
        raise InvalidProof("G2 point not in prime-order subgroup")
    return pt


def _parse_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text, 16) if text.lower().startswith("0x") else int(text)


# ============================================================================
# Proof
# ============================================================================

@dataclass(frozen=True)
class Groth16Proof:
    """Affine Groth16 proof (A in G1, B in G2, C in G1)"""
    a: G1Affine
    b: G2Affine
    c: G1Affine

    @classmethod
    def from_bytes(cls, data: bytes) -> "Groth16Proof":
        if len(data) != PROOF_LENGTH:
            raise InvalidProof(
                f"Invalid proof length: expected {PROOF_LENGTH} bytes, got {len(data)}"
            )
        words = [
            int.from_bytes(data[i:i + COORDINATE_LENGTH], "big")
            for i in range(0, PROOF_LENGTH, COORDINATE_LENGTH)
        ]
        return cls(
            a=(words[0], words[1]),
            b=((words[3], words[2]), (words[5], words[4])),
            c=(words[6], words[7]),
        )

    @classmethod
    def from_snarkjs(cls, proof: Dict[str, Any]) -> "Groth16Proof":
        """Parse a snarkjs proof.json object"""
        try:
            pi_a, pi_b, pi_c = proof["pi_a"], proof["pi_b"], proof["pi_c"]
            return cls(
                a=(_parse_int(pi_a[0]), _parse_int(pi_a[1])),
                b=(
                    (_parse_int(pi_b[0][0]), _parse_int(pi_b[0][1])),
                    (_parse_int(pi_b[1][0]), _parse_int(pi_b[1][1])),
                ),
                c=(_parse_int(pi_c[0]), _parse_int(pi_c[1])),
            )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise InvalidProof(f"Malformed snarkjs proof: {e}")

    def to_bytes(self) -> bytes:
        words = [
            self.a[0], self.a[1],
            self.b[0][1], self.b[0][0], self.b[1][1], self.b[1][0],
            self.c[0], self.c[1],
        ]
        try:
            return b"".join(w.to_bytes(COORDINATE_LENGTH, "big") for w in words)
        except OverflowError:
            raise InvalidProof("Proof coordinate does not fit in 32 bytes")


# ============================================================================
# Verification key
# ============================================================================

@dataclass
class VerificationKey:
    """Groth16 verification key in projective py_ecc points"""
    alpha_1: Any
    beta_2: Any
    gamma_2: Any
    delta_2: Any
    ic: List[Any]
    _alpha_beta: Optional[FQ12] = field(default=None, repr=False, compare=False)

    @property
    def n_public(self) -> int:
        return len(self.ic) - 1

    @property
    def alpha_beta_miller(self) -> FQ12:
        """Miller loop of e(alpha, beta), shared by every verification with this key"""
        if self._alpha_beta is None:
            self._alpha_beta = pairing(self.beta_2, self.alpha_1, final_exponentiate=False)
        return self._alpha_beta

    @classmethod
    def from_snarkjs(cls, data: Dict[str, Any]) -> "VerificationKey":
        """Parse a snarkjs verification_key.json object"""
        if not isinstance(data, dict):
            raise InvalidVerificationKey("Verification key must be a JSON object")
        if data.get("protocol", "groth16") != "groth16":
            raise InvalidVerificationKey(f"Unsupported protocol: {data.get('protocol')}")
        if data.get("curve", "bn128") not in ("bn128", "bn254"):
            raise InvalidVerificationKey(f"Unsupported curve: {data.get('curve')}")

        try:
            def g1(p):
                return _g1_point(_parse_int(p[0]), _parse_int(p[1]))

            def g2(p):
                return _g2_point(
                    (_parse_int(p[0][0]), _parse_int(p[0][1])),
                    (_parse_int(p[1][0]), _parse_int(p[1][1])),
                )

            vk = cls(
                alpha_1=g1(data["vk_alpha_1"]),
                beta_2=g2(data["vk_beta_2"]),
                gamma_2=g2(data["vk_gamma_2"]),
                delta_2=g2(data["vk_delta_2"]),
                ic=[g1(p) for p in data["IC"]],
            )
        except InvalidProof as e:
            raise InvalidVerificationKey(f"Invalid verification key point: {e.message}")
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise InvalidVerificationKey(f"Malformed verification key: {e}")

        if not vk.ic:
            raise InvalidVerificationKey("Verification key has no IC points")
        n_public = data.get("nPublic")
        if n_public is not None and int(n_public) != vk.n_public:
            raise InvalidVerificationKey(
                f"nPublic={n_public} does not match {len(vk.ic)} IC points"
            )
        return vk


def load_verification_key(path: str) -> VerificationKey:
    """Load a snarkjs verification_key.json from disk"""
    try:
        with open(Path(path), "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidVerificationKey(f"Cannot read verification key {path}: {e}")
    return VerificationKey.from_snarkjs(data)


# ============================================================================
# Public signals
# ============================================================================

@dataclass(frozen=True)
class PublicSignals:
    """Public inputs of the census circuit"""
    nullifier: bytes
    age_bracket: int
    continent: int
    census_commitment: int

    def to_field_elements(self) -> List[int]:
        return [
            to_field_element(self.nullifier),
            int(self.age_bracket),
            int(self.continent),
            int(self.census_commitment),
        ]


# ============================================================================
# Service
# ============================================================================

class CryptoService:
    """Service for Groth16 proof verification"""

    def __init__(self, default_key_path: Optional[str] = None):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.default_key_path = default_key_path
        self._default_key: Optional[VerificationKey] = None
        self._key_cache: Dict[str, VerificationKey] = {}

    def get_default_verification_key(self) -> Optional[VerificationKey]:
        """Deployment-wide key from VERIFICATION_KEY_PATH, loaded once"""
        if self._default_key is None and self.default_key_path:
            self._default_key = load_verification_key(self.default_key_path)
            self.logger.info(f"Loaded verification key from {self.default_key_path}")
        return self._default_key

    def resolve_verification_key(
        self,
        key_data: Optional[Dict[str, Any]]
    ) -> VerificationKey:
        """
        Parsed key for a census

        Args:
            key_data: snarkjs key JSON stored with the census, or None

        Returns:
            The census key, falling back to the deployment default
        """
        if key_data is None:
            vk = self.get_default_verification_key()
            if vk is None:
                raise InvalidVerificationKey("No verification key configured for census")
            return vk

        cache_key = json.dumps(key_data, sort_keys=True)
        vk = self._key_cache.get(cache_key)
        if vk is None:
            vk = VerificationKey.from_snarkjs(key_data)
            self._key_cache[cache_key] = vk
        return vk

    def verify(
        self,
        proof: bytes,
        public_signals: PublicSignals,
        verification_key: VerificationKey
    ) -> bool:
        """
        Verify a Groth16 proof

        Checks e(A, B) == e(alpha, beta) * e(L, gamma) * e(C, delta) where
        L = IC[0] + sum(IC[i + 1] * signal[i]).

        Args:
            proof: 256-byte encoded proof
            public_signals: Public inputs the proof must bind to
            verification_key: Trusted key of the census circuit

        Returns:
            True iff the pairing equation holds

        Raises:
            InvalidProof: if the proof is structurally malformed
        """
        parsed = Groth16Proof.from_bytes(bytes(proof))
        a = _g1_point(*parsed.a)
        b_pt = _g2_point(*parsed.b)
        c = _g1_point(*parsed.c)

        signals = public_signals.to_field_elements()
        if len(signals) != verification_key.n_public:
            raise InvalidProof(
                f"Expected {verification_key.n_public} public signals, got {len(signals)}"
            )
        for signal in signals:
            if not 0 <= signal < curve_order:
                raise InvalidProof("Public signal outside scalar field")

        vk_x = verification_key.ic[0]
        for signal, ic_point in zip(signals, verification_key.ic[1:]):
            vk_x = add(vk_x, multiply(ic_point, signal))

        # Product of Miller loops with one final exponentiation
        product = pairing(b_pt, neg(a), final_exponentiate=False)
        product = product * verification_key.alpha_beta_miller
        product = product * pairing(verification_key.gamma_2, vk_x, final_exponentiate=False)
        product = product * pairing(verification_key.delta_2, c, final_exponentiate=False)

        is_valid = final_exponentiate(product) == FQ12.one()
        self.logger.debug(f"Groth16 verification result: {is_valid}")
        return is_valid

    def health_check(self) -> Dict[str, Any]:
        """Check verifier health"""
        try:
            vk = self.get_default_verification_key()
            return {
                "status": "healthy",
                "library": "py_ecc.optimized_bn128",
                "default_key_loaded": vk is not None,
                "public_signals": vk.n_public if vk else None,
            }
        except Exception as e:
            self.logger.error(f"Crypto health check failed: {e}", exc_info=True)
            return {
                "status": "unhealthy",
                "library": "py_ecc.optimized_bn128",
                "error": str(e),
            }


# Global crypto service instance
_crypto_service: Optional[CryptoService] = None


def get_crypto_service() -> CryptoService:
    """Get global crypto service instance"""
    global _crypto_service
    if _crypto_service is None:
        _crypto_service = CryptoService(default_key_path=settings.VERIFICATION_KEY_PATH)
    return _crypto_service
