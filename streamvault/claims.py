"""
Claim settlement pipeline for cl-stream.

Turns a beneficiary's claim request into exactly one committed advance of
the stream's streamed commitment.

Claim Flow:
1. RECEIVED: load the stream, compute vested and claimable amounts
2. AUTHORIZED: wallet signature over the canonical claim message
3. ATTESTED: vesting proof generated for (stream, accepted, timestamp)
4. VERIFIED: proof checked against the same triple
5. COMMITTED: registry publish, then commitment and claim record in one
   store transaction, then vault release

Any failure before step 5 is REJECTED and leaves no durable trace.

Thread Safety:
- The whole flow for one stream runs under StreamDatabase.stream_lock()
- Different streams settle in parallel
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .attestation import ProofAttestor, ProofVerification
from .errors import (
    AuthError,
    AuthFormatError,
    ExternalServiceError,
    NotFound,
    NothingVested,
    ProofInvalid,
    StreamError,
    Unauthorized,
)
from .registry import RegistryClient
from .signature import SignatureAuthenticator
from .streams import ClaimRecord, STATUS_COMPLETED, new_claim_id
from .vault import VaultClient
from .vesting import vested_amount


DEMO_FALLBACK_ADDRESS = "demo-fallback-address"
MOCK_VAULT_ID = "mock"


class ClaimState(Enum):
    """Claim lifecycle states."""
    RECEIVED = "received"
    AUTHORIZED = "authorized"
    ATTESTED = "attested"
    VERIFIED = "verified"
    COMMITTED = "committed"
    REJECTED = "rejected"


@dataclass
class ClaimRequest:
    stream_id: str
    amount_sats: int
    timestamp: Optional[int] = None
    wallet_address: Optional[str] = None
    wallet_signature: Optional[str] = None


@dataclass
class SettlementResult:
    """Outcome of a committed claim."""
    stream_id: str
    claim_id: str
    accepted_amount_sats: int
    streamed_commitment_sats: int
    vested_amount_sats: int
    status: str
    verification: ProofVerification
    release: Dict[str, Any]
    wallet_address: str
    signature_verified: bool
    timestamp: int
    states: List[ClaimState] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "claim_id": self.claim_id,
            "accepted_amount_sats": self.accepted_amount_sats,
            "streamed_commitment_sats": self.streamed_commitment_sats,
            "vested_amount_sats": self.vested_amount_sats,
            "status": self.status,
            "proof": self.verification.to_dict(),
            "release": self.release,
            "wallet_address": self.wallet_address,
            "signature_verified": self.signature_verified,
            "timestamp": self.timestamp,
        }


def claim_message(wallet_address: str, stream_id: str, amount_sats: int,
                  timestamp: int) -> str:
    """Canonical compact JSON a wallet signs to authorize a claim."""
    return json.dumps({
        "action": "claimStream",
        "walletAddress": wallet_address,
        "streamId": stream_id,
        "amountSats": amount_sats,
        "timestamp": timestamp,
    }, separators=(",", ":"))


class ClaimSettlementPipeline:
    """Authorizes, attests, verifies, and commits claims against streams."""

    def __init__(self, database, authenticator: SignatureAuthenticator,
                 attestor: ProofAttestor, registry: RegistryClient,
                 vault: VaultClient, plugin=None,
                 require_wallet_signature: bool = False,
                 demo_wallet_address: str = ""):
        self.db = database
        self.authenticator = authenticator
        self.attestor = attestor
        self.registry = registry
        self.vault = vault
        self.plugin = plugin
        self.require_wallet_signature = require_wallet_signature
        self.demo_wallet_address = demo_wallet_address

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"cl-stream: claims: {msg}", level=level)

    def resolve_wallet_address(self, wallet_address: Optional[str]) -> str:
        return wallet_address or self.demo_wallet_address or DEMO_FALLBACK_ADDRESS

    def settle(self, request: ClaimRequest) -> SettlementResult:
        """
        Settle one claim. Raises NotFound, NothingVested, Unauthorized,
        ProofInvalid, or ExternalServiceError (fallback disabled); none of
        these leave a durable change behind.
        """
        try:
            # Streams are never deleted, so only known ids get a lock
            if self.db.get_stream(request.stream_id) is None:
                raise NotFound(f"Stream {request.stream_id} not found",
                               stream_id=request.stream_id)
            with self.db.stream_lock(request.stream_id):
                return self._settle_locked(request)
        except StreamError as e:
            self._log(f"claim on {request.stream_id} {ClaimState.REJECTED.value}: {e.code}",
                      level="debug")
            raise

    def _settle_locked(self, request: ClaimRequest) -> SettlementResult:
        states = [ClaimState.RECEIVED]
        timestamp = int(request.timestamp) if request.timestamp is not None else int(time.time())
        requested = int(request.amount_sats)

        stream = self.db.get_stream(request.stream_id)
        if stream is None:
            raise NotFound(f"Stream {request.stream_id} not found",
                           stream_id=request.stream_id)

        vested = vested_amount(
            stream.start_unix,
            stream.cliff_unix,
            stream.rate_sats_per_sec,
            stream.total_amount_sats,
            timestamp,
        )
        streamed = stream.streamed_commitment_sats
        claimable = max(vested - streamed, 0)
        accepted = min(requested, claimable)
        numbers = {"vested": vested, "streamed": streamed, "requested": requested}

        if accepted <= 0:
            self._log(f"nothing to settle on {stream.id} "
                      f"(vested={vested} streamed={streamed} requested={requested})",
                      level="debug")
            raise NothingVested("No vested amount available to claim", **numbers)

        # Authorization
        wallet_address = self.resolve_wallet_address(request.wallet_address)
        message = claim_message(wallet_address, stream.id, requested, timestamp)
        try:
            signature_verified = self.authenticator.verify(
                message,
                wallet_address,
                request.wallet_signature,
                require=self.require_wallet_signature,
            )
        except (AuthError, AuthFormatError) as e:
            self._log(f"claim on {stream.id} rejected: {e.message}", level="warn")
            raise Unauthorized(e.message, reason=e.code, **numbers) from e
        if not signature_verified:
            self._log(f"wallet signature not verified for claim on {stream.id}, "
                      f"continuing (signature not required)", level="warn")
        states.append(ClaimState.AUTHORIZED)

        # Attestation
        proof = self.attestor.generate(stream.id, accepted, timestamp)
        states.append(ClaimState.ATTESTED)

        verification = self.attestor.verify(proof, stream.id, accepted, timestamp)
        if not verification.valid:
            self._log(f"proof rejected for {stream.id} digest={verification.digest[:16]}",
                      level="warn")
            raise ProofInvalid("Vesting proof failed verification",
                               digest=verification.digest, **numbers)
        states.append(ClaimState.VERIFIED)

        # Commit
        new_commitment = min(streamed + accepted, stream.total_amount_sats)
        status = STATUS_COMPLETED if new_commitment == stream.total_amount_sats else stream.status
        self.registry.publish(stream.id, new_commitment)

        claim = ClaimRecord(
            id=new_claim_id(),
            stream_id=stream.id,
            amount_sats=accepted,
            proof=proof.to_json(),
            verified=True,
        )
        if not self.db.commit_claim(stream.id, new_commitment, status, claim):
            raise NotFound(f"Stream {stream.id} not found", stream_id=stream.id)
        states.append(ClaimState.COMMITTED)

        # The claim is committed; a release failure is reported, not rolled back
        try:
            release = self.vault.simulate_release(stream.vault_id or MOCK_VAULT_ID, accepted)
        except ExternalServiceError as e:
            self._log(f"release after claim {claim.id} failed: {e.message}", level="warn")
            release = {"released": False, "via": "remote", "error": e.upstream_message}

        self._log(f"settled {accepted} sats on {stream.id} "
                  f"(commitment {streamed} -> {new_commitment}, {status}, "
                  f"proof via {verification.via})")

        return SettlementResult(
            stream_id=stream.id,
            claim_id=claim.id,
            accepted_amount_sats=accepted,
            streamed_commitment_sats=new_commitment,
            vested_amount_sats=vested,
            status=status,
            verification=verification,
            release=release,
            wallet_address=wallet_address,
            signature_verified=signature_verified,
            timestamp=timestamp,
            states=states,
        )
