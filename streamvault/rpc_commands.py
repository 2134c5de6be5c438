"""
RPC command handlers for cl-stream.

Each handler takes a StreamContext first and returns a result dict. Business
errors come back as {"error": code, "message": ..., **context} rather than
raising, so lightning-cli callers can branch on the code.
"""

import json
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .attestation import ProofAttestor, VestingProof
from .claims import ClaimRequest, ClaimSettlementPipeline
from .config import StreamConfig
from .database import StreamDatabase
from .errors import (
    AuthError,
    AuthFormatError,
    ExternalServiceError,
    StreamError,
    Unauthorized,
)
from .ratelimit import FixedWindowRateLimiter
from .registry import MintParams, RegistryClient
from .remote import RemoteService
from .signature import SignatureAuthenticator
from .streams import btc_to_sats
from .vault import VaultClient
from .vesting import claimable, vested_amount


DEFAULT_POLICY = "standard"
MIN_REVOCATION_PUBKEY_LEN = 8
MIN_BENEFICIARY_LEN = 4


@dataclass
class StreamContext:
    """Everything the handlers need, built once at plugin init."""
    database: Any
    config: StreamConfig
    authenticator: SignatureAuthenticator
    attestor: ProofAttestor
    registry: RegistryClient
    vault: VaultClient
    pipeline: ClaimSettlementPipeline
    limiter: FixedWindowRateLimiter
    strict_limiter: FixedWindowRateLimiter
    log: Callable[..., None] = lambda msg, level="info": None
    started_at: float = field(default_factory=time.time)


def _error(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    result = {"error": code, "message": message}
    result.update(extra)
    return result


def _gate(ctx: StreamContext, caller: str, strict: bool = False) -> Optional[Dict[str, Any]]:
    """Rate-limit gate. Returns an error dict when the caller is over budget."""
    limiter = ctx.strict_limiter if strict else ctx.limiter
    decision = limiter.check(caller or "local")
    if decision.allowed:
        return None
    ctx.log(f"cl-stream: rate limit hit for {caller}", level="warn")
    return decision.to_error()


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer")


# =============================================================================
# STREAM CREATION
# =============================================================================

def create_message(wallet_address: str, payload: Dict[str, Any]) -> str:
    """Canonical compact JSON a wallet signs to authorize stream creation."""
    return json.dumps({
        "action": "createStream",
        "walletAddress": wallet_address,
        "payload": payload,
    }, separators=(",", ":"))


def stream_create(ctx: StreamContext, total_amount_btc: Any, rate_sats_per_sec: Any,
                  beneficiary: str, revocation_pubkey: str,
                  start_unix: Any = None, cliff_unix: Any = None,
                  policy: str = DEFAULT_POLICY,
                  wallet_address: Optional[str] = None,
                  wallet_signature: Optional[str] = None,
                  caller: str = "local") -> Dict[str, Any]:
    """
    Fund a vault and mint a stream against it.

    Args:
        total_amount_btc: Total to vest, in BTC (converted to sats exactly)
        rate_sats_per_sec: Vesting rate
        beneficiary: Receiving party identifier
        revocation_pubkey: Key allowed to revoke the stream
        start_unix: Vesting start (default: now)
        cliff_unix: Cliff (default: start)
        policy: Vault policy label
        wallet_address / wallet_signature: Signer of the createStream message

    Returns:
        Dict with vault_id, stream_id, charm_id, metadata and wallet_address.
    """
    limited = _gate(ctx, caller, strict=True)
    if limited:
        return limited

    try:
        total_sats = btc_to_sats(total_amount_btc)
        rate = _as_int(rate_sats_per_sec, "rate_sats_per_sec")
        start = _as_int(start_unix, "start_unix") if start_unix is not None else int(time.time())
        cliff = _as_int(cliff_unix, "cliff_unix") if cliff_unix is not None else start
    except (ArithmeticError, ValueError) as e:
        return _error("invalid_params", str(e))

    if total_sats <= 0:
        return _error("invalid_params", "total_amount_btc must be positive")
    if rate <= 0:
        return _error("invalid_params", "rate_sats_per_sec must be positive")
    if cliff < start:
        return _error("invalid_params", "cliff_unix must be >= start_unix")
    if not isinstance(revocation_pubkey, str) or len(revocation_pubkey) < MIN_REVOCATION_PUBKEY_LEN:
        return _error("invalid_params",
                      f"revocation_pubkey must be at least {MIN_REVOCATION_PUBKEY_LEN} characters")
    if not isinstance(beneficiary, str) or len(beneficiary) < MIN_BENEFICIARY_LEN:
        return _error("invalid_params",
                      f"beneficiary must be at least {MIN_BENEFICIARY_LEN} characters")

    address = ctx.pipeline.resolve_wallet_address(wallet_address)
    payload = {
        "totalAmountBtc": total_amount_btc,
        "rateSatsPerSec": rate,
        "startUnix": start,
        "cliffUnix": cliff,
        "beneficiary": beneficiary,
        "revocationPubkey": revocation_pubkey,
        "policy": policy,
        "walletAddress": address,
    }
    try:
        verified = ctx.authenticator.verify(
            create_message(address, payload),
            address,
            wallet_signature,
            require=ctx.config.require_wallet_signature,
        )
    except (AuthError, AuthFormatError) as e:
        return Unauthorized(e.message, reason=e.code).to_dict()
    if not verified:
        ctx.log(f"cl-stream: createStream signature not verified for {address[:16]}",
                level="warn")

    try:
        vault_address = ctx.vault.provision_address(int(time.time()))
        vault = ctx.vault.deposit(total_sats, beneficiary, policy)
        metadata = ctx.registry.mint(MintParams(
            vault_id=vault.id,
            total_amount_sats=total_sats,
            rate_sats_per_sec=rate,
            start_unix=start,
            cliff_unix=cliff,
            beneficiary=beneficiary,
            revocation_pubkey=revocation_pubkey,
        ))
    except ExternalServiceError as e:
        return e.to_dict()

    return {
        "vault_id": vault.id,
        "vault_address": vault_address,
        "stream_id": metadata.stream_id,
        "charm_id": metadata.charm_id,
        "metadata": metadata.to_dict(),
        "wallet_address": address,
        "signature_verified": verified,
    }


# =============================================================================
# CLAIMS
# =============================================================================

def stream_claim(ctx: StreamContext, stream_id: str, amount_sats: Any,
                 timestamp: Any = None, wallet_address: Optional[str] = None,
                 wallet_signature: Optional[str] = None,
                 caller: str = "local") -> Dict[str, Any]:
    """Settle a claim against a stream."""
    limited = _gate(ctx, caller, strict=True)
    if limited:
        return limited

    try:
        amount = _as_int(amount_sats, "amount_sats")
        ts = _as_int(timestamp, "timestamp") if timestamp is not None else None
    except ValueError as e:
        return _error("invalid_params", str(e))
    if amount <= 0:
        return _error("invalid_params", "amount_sats must be positive")

    try:
        result = ctx.pipeline.settle(ClaimRequest(
            stream_id=stream_id,
            amount_sats=amount,
            timestamp=ts,
            wallet_address=wallet_address,
            wallet_signature=wallet_signature,
        ))
    except StreamError as e:
        return e.to_dict()
    return result.to_dict()


def stream_verify_proof(ctx: StreamContext, proof: Any, stream_id: str,
                        amount_sats: Any, timestamp: Any,
                        caller: str = "local") -> Dict[str, Any]:
    """Check a stored or client-held vesting proof against its claim triple."""
    limited = _gate(ctx, caller)
    if limited:
        return limited

    try:
        if isinstance(proof, str):
            proof = json.loads(proof)
        vesting_proof = VestingProof.from_dict(proof)
        amount = _as_int(amount_sats, "amount_sats")
        ts = _as_int(timestamp, "timestamp")
    except ValueError as e:
        return _error("invalid_params", str(e))

    try:
        verification = ctx.attestor.verify(vesting_proof, stream_id, amount, ts)
    except ExternalServiceError as e:
        return e.to_dict()
    return verification.to_dict()


# =============================================================================
# QUERIES
# =============================================================================

def stream_list(ctx: StreamContext, caller: str = "local") -> Dict[str, Any]:
    """All streams, newest first, each with its claims."""
    limited = _gate(ctx, caller)
    if limited:
        return limited

    streams = []
    for stream in ctx.database.list_streams():
        entry = stream.to_dict()
        entry["claims"] = [c.to_dict() for c in ctx.database.list_claims(stream.id)]
        streams.append(entry)
    return {"streams": streams, "count": len(streams)}


def stream_get(ctx: StreamContext, stream_id: str, at: Any = None,
               caller: str = "local") -> Dict[str, Any]:
    """One stream with its registry view and claimable amount."""
    limited = _gate(ctx, caller)
    if limited:
        return limited

    stream = ctx.database.get_stream(stream_id)
    if stream is None:
        return _error("not_found", f"Stream {stream_id} not found", stream_id=stream_id)

    try:
        now = _as_int(at, "at") if at is not None else int(time.time())
    except ValueError as e:
        return _error("invalid_params", str(e))

    try:
        metadata = ctx.registry.query(stream_id)
    except ExternalServiceError as e:
        return e.to_dict()

    result = stream.to_dict()
    result["vested_amount_sats"] = vested_amount(
        stream.start_unix, stream.cliff_unix, stream.rate_sats_per_sec,
        stream.total_amount_sats, now,
    )
    result["claimable_sats"] = claimable(stream, now)
    result["registry"] = metadata.to_dict() if metadata else None
    result["claims"] = [c.to_dict() for c in ctx.database.list_claims(stream_id)]
    return result


def stream_health(ctx: StreamContext, caller: str = "local") -> Dict[str, Any]:
    """Liveness plus store readiness."""
    limited = _gate(ctx, caller)
    if limited:
        return limited

    try:
        ready = ctx.database.ping()
        db_error = None
    except sqlite3.Error as e:
        ready = False
        db_error = str(e)

    result = {
        "status": "ok" if ready else "degraded",
        "ready": ready,
        "uptime_seconds": int(time.time() - ctx.started_at),
        "require_wallet_signature": ctx.config.require_wallet_signature,
        "services": {
            "attestation": ctx.attestor.caller.outage.snapshot(),
            "registry": ctx.registry.caller.outage.snapshot(),
            "vault": ctx.vault.vault_caller.outage.snapshot(),
        },
    }
    if db_error:
        result["db_error"] = db_error
    return result


# =============================================================================
# CONTEXT WIRING
# =============================================================================

def build_context(config: StreamConfig, plugin, database=None,
                  transport=None) -> StreamContext:
    """
    Wire the store, remote services, and managers for one plugin instance.

    `transport` is handed to every httpx client (tests pass a MockTransport).
    """
    if database is None:
        database = StreamDatabase(config.db_path, plugin)
        database.initialize()

    attestation_service = RemoteService(
        "attestation", config.attestation_api_base, config.attestation_api_key,
        timeout=config.attestation_timeout_seconds, transport=transport,
    )
    registry_service = RemoteService(
        "registry", config.registry_api_base, config.registry_api_key,
        timeout=config.http_timeout_seconds, transport=transport,
    )
    vault_service = RemoteService(
        "vault", config.vault_api_base, config.vault_api_key,
        timeout=config.http_timeout_seconds, transport=transport,
    )
    scrolls_service = RemoteService(
        "scrolls", config.scrolls_api_base,
        timeout=config.http_timeout_seconds, transport=transport,
    )

    authenticator = SignatureAuthenticator(plugin)
    attestor = ProofAttestor(attestation_service, plugin,
                             allow_fallback=config.attestation_allow_fallback)
    registry = RegistryClient(database, registry_service, plugin,
                              allow_fallback=config.registry_allow_fallback)
    vault = VaultClient(database, vault_service, scrolls_service, plugin,
                        allow_fallback=config.vault_allow_fallback,
                        network=config.scrolls_network)
    pipeline = ClaimSettlementPipeline(
        database, authenticator, attestor, registry, vault, plugin,
        require_wallet_signature=config.require_wallet_signature,
        demo_wallet_address=config.demo_wallet_address,
    )

    return StreamContext(
        database=database,
        config=config,
        authenticator=authenticator,
        attestor=attestor,
        registry=registry,
        vault=vault,
        pipeline=pipeline,
        limiter=FixedWindowRateLimiter(config.rate_limit_window_seconds,
                                       config.rate_limit_max_requests),
        strict_limiter=FixedWindowRateLimiter(config.rate_limit_window_seconds,
                                              config.rate_limit_strict_max_requests),
        log=plugin.log,
    )
