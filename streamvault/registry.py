"""
Stream registry (charm) client.

Mints, updates, and queries the registry representation of a stream. The
local store is the durable source of truth for settlement: every mint and
update lands locally whether the remote registry answered or the fallback
ran.
"""

import uuid
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from .errors import ExternalServiceError
from .remote import RemoteService
from .resilience import ResilientRemoteCall
from .streams import STATUS_ACTIVE, Stream, new_stream_id


PLACEHOLDER_CHARM_ID = "mock-charm"

_INT_FIELDS = (
    "total_amount_sats",
    "rate_sats_per_sec",
    "start_unix",
    "cliff_unix",
    "streamed_commitment_sats",
)
_STR_FIELDS = ("stream_id", "charm_id", "revocation_pubkey", "status")


@dataclass
class MintParams:
    vault_id: Optional[str]
    total_amount_sats: int
    rate_sats_per_sec: int
    start_unix: int
    cliff_unix: int
    beneficiary: str
    revocation_pubkey: str
    stream_id: Optional[str] = None


@dataclass
class RegistryMetadata:
    stream_id: str
    charm_id: str
    revocation_pubkey: str
    total_amount_sats: int
    rate_sats_per_sec: int
    start_unix: int
    cliff_unix: int
    streamed_commitment_sats: int
    status: str

    @classmethod
    def from_stream(cls, stream: Stream, charm_id: Optional[str] = None) -> "RegistryMetadata":
        return cls(
            stream_id=stream.id,
            charm_id=charm_id or stream.charm_id or PLACEHOLDER_CHARM_ID,
            revocation_pubkey=stream.revocation_pubkey,
            total_amount_sats=stream.total_amount_sats,
            rate_sats_per_sec=stream.rate_sats_per_sec,
            start_unix=stream.start_unix,
            cliff_unix=stream.cliff_unix,
            streamed_commitment_sats=stream.streamed_commitment_sats,
            status=stream.status,
        )

    @classmethod
    def from_remote(cls, data: Dict[str, Any], fallback: "RegistryMetadata") -> "RegistryMetadata":
        """Overlay a remote payload on locally known values."""
        if not isinstance(data, dict):
            raise ExternalServiceError("registry", "unexpected registry response")
        merged = asdict(fallback)
        for key in merged:
            if data.get(key) is not None:
                merged[key] = data[key]
        return cls._coerced(merged)

    @classmethod
    def from_payload(cls, data: Dict[str, Any], stream_id: str) -> "RegistryMetadata":
        """Metadata for a stream only the remote registry knows about."""
        if not isinstance(data, dict):
            raise ExternalServiceError("registry", "unexpected registry response")
        return cls._coerced({
            "stream_id": data.get("stream_id", stream_id),
            "charm_id": data.get("charm_id") or PLACEHOLDER_CHARM_ID,
            "revocation_pubkey": data.get("revocation_pubkey", ""),
            "total_amount_sats": data.get("total_amount_sats", 0),
            "rate_sats_per_sec": data.get("rate_sats_per_sec", 0),
            "start_unix": data.get("start_unix", 0),
            "cliff_unix": data.get("cliff_unix", 0),
            "streamed_commitment_sats": data.get("streamed_commitment_sats", 0),
            "status": data.get("status", STATUS_ACTIVE),
        })

    @classmethod
    def _coerced(cls, values: Dict[str, Any]) -> "RegistryMetadata":
        try:
            for key in _INT_FIELDS:
                value = values[key]
                if isinstance(value, (bool, float)):
                    raise ValueError(f"{key} must be an integer")
                values[key] = int(value)
            for key in _STR_FIELDS:
                if not isinstance(values[key], str):
                    raise TypeError(f"{key} must be a string")
        except (TypeError, ValueError) as e:
            raise ExternalServiceError("registry", f"malformed registry response: {e}") from e
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RegistryClient:
    """Charm registry client with local persistence and mock fallback."""

    def __init__(self, database, service: RemoteService, plugin=None,
                 allow_fallback: bool = True):
        self.db = database
        self.service = service
        self.plugin = plugin
        self.caller = ResilientRemoteCall(
            "registry",
            plugin=plugin,
            allow_fallback=allow_fallback,
            enabled=service.configured,
        )

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"cl-stream: registry: {msg}", level=level)

    def mint(self, params: MintParams) -> RegistryMetadata:
        """Persist a new stream, then register it remotely (or mint a mock charm)."""
        stream = Stream(
            id=params.stream_id or new_stream_id(),
            vault_id=params.vault_id,
            charm_id=None,
            beneficiary=params.beneficiary,
            total_amount_sats=params.total_amount_sats,
            rate_sats_per_sec=params.rate_sats_per_sec,
            start_unix=params.start_unix,
            cliff_unix=params.cliff_unix,
            revocation_pubkey=params.revocation_pubkey,
            streamed_commitment_sats=0,
            status=STATUS_ACTIVE,
        )
        self.db.create_stream(stream)

        def remote() -> RegistryMetadata:
            data = self.service.post("/stream-charm/mint", {
                "vault_id": params.vault_id,
                "stream_id": stream.id,
                "total_amount_sats": params.total_amount_sats,
                "rate_sats_per_sec": params.rate_sats_per_sec,
                "start_unix": params.start_unix,
                "cliff_unix": params.cliff_unix,
                "beneficiary": params.beneficiary,
                "revocation_pubkey": params.revocation_pubkey,
            })
            metadata = RegistryMetadata.from_remote(
                data, RegistryMetadata.from_stream(stream, charm_id=PLACEHOLDER_CHARM_ID)
            )
            charm_id = data.get("charm_id")
            if charm_id:
                self.db.attach_charm_id(stream.id, charm_id)
            return metadata

        def local() -> RegistryMetadata:
            charm_id = f"charm_{uuid.uuid4()}"
            self.db.attach_charm_id(stream.id, charm_id)
            return RegistryMetadata.from_stream(stream, charm_id=charm_id)

        metadata = self.caller.call(remote, local, label="mint")
        self._log(f"minted {stream.id} charm={metadata.charm_id}")
        return metadata

    def publish(self, stream_id: str, commitment_sats: int) -> None:
        """
        Push a new commitment to the remote registry only. With fallback
        disabled a remote failure propagates; otherwise it is a no-op.
        """
        def remote() -> None:
            self.service.post(
                f"/stream-charm/{stream_id}/update",
                {"streamed_commitment_sats": commitment_sats},
            )

        def local() -> None:
            return None

        self.caller.call(remote, local, label="update")

    def update(self, stream_id: str, commitment_sats: int,
               status: Optional[str] = None) -> None:
        """
        Push the new commitment to the registry, then persist it locally.

        With fallback disabled a remote failure propagates before anything
        is written.
        """
        self.publish(stream_id, commitment_sats)
        if not self.db.update_commitment(stream_id, commitment_sats, status):
            self._log(f"update for unknown stream {stream_id}", level="warn")

    def query(self, stream_id: str) -> Optional[RegistryMetadata]:
        def remote() -> Optional[RegistryMetadata]:
            data = self.service.get(f"/stream-charm/{stream_id}")
            stream = self.db.get_stream(stream_id)
            if stream is None:
                return RegistryMetadata.from_payload(data, stream_id)
            return RegistryMetadata.from_remote(data, RegistryMetadata.from_stream(stream))

        def local() -> Optional[RegistryMetadata]:
            stream = self.db.get_stream(stream_id)
            if stream is None:
                return None
            return RegistryMetadata.from_stream(stream)

        return self.caller.call(remote, local, label="query")
