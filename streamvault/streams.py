"""
Stream data model.

A Stream is a linear vesting schedule plus its settlement progress. Claims
are append-only records of accepted withdrawals against a stream.
"""

import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional


SATS_PER_BTC = 100_000_000

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_REVOKED = "revoked"
VALID_STATUSES = frozenset({STATUS_ACTIVE, STATUS_COMPLETED, STATUS_REVOKED})


def btc_to_sats(amount_btc) -> int:
    """Convert a BTC amount to integer sats, rounding half up."""
    sats = Decimal(str(amount_btc)) * SATS_PER_BTC
    return int(sats.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def sats_to_btc(amount_sats: int) -> Decimal:
    return Decimal(amount_sats) / SATS_PER_BTC


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_stream_id() -> str:
    return f"stream_{uuid.uuid4()}"


def new_claim_id() -> str:
    return f"claim_{uuid.uuid4()}"


@dataclass
class Stream:
    """A vesting schedule and its progress."""
    id: str
    beneficiary: str
    total_amount_sats: int
    rate_sats_per_sec: int
    start_unix: int
    cliff_unix: int
    revocation_pubkey: str = ""
    vault_id: Optional[str] = None
    charm_id: Optional[str] = None
    streamed_commitment_sats: int = 0
    status: str = STATUS_ACTIVE
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row) -> "Stream":
        return cls(
            id=row["id"],
            vault_id=row["vault_id"],
            charm_id=row["charm_id"],
            beneficiary=row["beneficiary"],
            total_amount_sats=int(row["total_amount_sats"]),
            rate_sats_per_sec=int(row["rate_sats_per_sec"]),
            start_unix=int(row["start_unix"]),
            cliff_unix=int(row["cliff_unix"]),
            revocation_pubkey=row["revocation_pubkey"],
            streamed_commitment_sats=int(row["streamed_commitment_sats"]),
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ClaimRecord:
    """An accepted claim against a stream. Immutable once stored."""
    id: str
    stream_id: str
    amount_sats: int
    proof: str
    verified: bool = True
    created_at: str = ""

    @classmethod
    def from_row(cls, row) -> "ClaimRecord":
        return cls(
            id=row["id"],
            stream_id=row["stream_id"],
            amount_sats=int(row["amount_sats"]),
            proof=row["proof"],
            verified=bool(row["verified"]),
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VaultRecord:
    """A custody deposit backing one or more streams."""
    id: str
    amount_sats: int
    beneficiary: str
    policy: str
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
