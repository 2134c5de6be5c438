"""
Vesting proof attestation.

Generates and verifies proofs that a (stream, amount, timestamp) triple is
inside the vested envelope.

Remote path: the attestation service produces proof + public signals and
later accepts or rejects them. Any non-error verify response is valid.

Fallback path: the proof payload IS the claim triple, and its digest is the
SHA-256 of that triple. Verification recomputes the digest from the claim
being settled and compares. This only proves the proof was built for this
exact triple; it is not a cryptographic vesting proof.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict

from .errors import ExternalServiceError
from .remote import RemoteService
from .resilience import ResilientRemoteCall


VIA_REMOTE = "remote"
VIA_MOCK = "mock"

# Proof generation is slow on the remote prover
ATTESTATION_TIMEOUT_SECONDS = 60


def content_digest(payload: Dict[str, Any]) -> str:
    """SHA-256 hex over compact JSON, key order as given."""
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def claim_digest(stream_id: str, amount_sats: int, timestamp: int) -> str:
    return content_digest({
        "streamId": stream_id,
        "claimedAmountSats": amount_sats,
        "timestamp": timestamp,
    })


@dataclass
class VestingProof:
    proof: Any
    public_signals: Any
    digest: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof": self.proof,
            "publicSignals": self.public_signals,
            "digest": self.digest,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VestingProof":
        if not isinstance(data, dict):
            raise ValueError("proof must be an object")
        return cls(
            proof=data.get("proof"),
            public_signals=data.get("publicSignals", data.get("public_signals")),
            digest=str(data.get("digest", "")),
        )


@dataclass
class ProofVerification:
    valid: bool
    via: str
    digest: str

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "via": self.via, "digest": self.digest}


class ProofAttestor:
    """Generates and verifies vesting proofs with a mock fallback."""

    def __init__(self, service: RemoteService, plugin=None, allow_fallback: bool = True):
        self.service = service
        self.plugin = plugin
        self.caller = ResilientRemoteCall(
            "attestation",
            plugin=plugin,
            allow_fallback=allow_fallback,
            enabled=service.configured,
        )

    def generate(self, stream_id: str, amount_sats: int, timestamp: int) -> VestingProof:
        def remote() -> VestingProof:
            data = self.service.post("/vest/generate", {
                "stream_id": stream_id,
                "amount_sats": amount_sats,
                "timestamp": timestamp,
            })
            if not isinstance(data, dict):
                raise ExternalServiceError("attestation", "unexpected generate response")
            proof = data.get("proof")
            signals = data.get("publicSignals")
            return VestingProof(
                proof=proof,
                public_signals=signals,
                digest=content_digest({"proof": proof, "publicSignals": signals}),
            )

        def local() -> VestingProof:
            return build_mock_proof(stream_id, amount_sats, timestamp)

        return self.caller.call(remote, local, label="proof generation")

    def verify(self, proof: VestingProof, stream_id: str, amount_sats: int,
               timestamp: int) -> ProofVerification:
        def remote() -> ProofVerification:
            self.service.post("/vest/verify", {
                "stream_id": stream_id,
                "amount_sats": amount_sats,
                "timestamp": timestamp,
                "proof": proof.proof,
                "publicSignals": proof.public_signals,
            })
            return ProofVerification(valid=True, via=VIA_REMOTE, digest=proof.digest)

        def local() -> ProofVerification:
            digest = claim_digest(stream_id, amount_sats, timestamp)
            return ProofVerification(valid=digest == proof.digest, via=VIA_MOCK, digest=digest)

        return self.caller.call(remote, local, label="proof verification")


def build_mock_proof(stream_id: str, amount_sats: int, timestamp: int) -> VestingProof:
    return VestingProof(
        proof={
            "mock": True,
            "streamId": stream_id,
            "claimedAmountSats": amount_sats,
            "timestamp": timestamp,
        },
        public_signals={
            "streamId": stream_id,
            "claimedAmountSats": amount_sats,
            "timestamp": timestamp,
        },
        digest=claim_digest(stream_id, amount_sats, timestamp),
    )
