"""
Vault/custody client.

Provisions a receiving address for a stream, records custody deposits, and
asks the custody service to release or sign spends. The settlement core
only consumes an address string and a released/signed boolean, each tagged
with its provenance.
"""

import uuid
from typing import Any, Dict

from .errors import ExternalServiceError
from .remote import RemoteService
from .resilience import ResilientRemoteCall
from .streams import VaultRecord


MOCK_VAULT_ADDRESS = "mock_scrolls_address"


class VaultClient:
    """Custody operations against the vault and address-derivation services."""

    def __init__(self, database, vault_service: RemoteService,
                 scrolls_service: RemoteService, plugin=None,
                 allow_fallback: bool = True, network: str = "testnet4"):
        self.db = database
        self.vault_service = vault_service
        self.scrolls_service = scrolls_service
        self.plugin = plugin
        self.network = network
        self.vault_caller = ResilientRemoteCall(
            "vault",
            plugin=plugin,
            allow_fallback=allow_fallback,
            enabled=vault_service.configured,
        )
        # Address derivation always degrades to the mock address
        self.scrolls_caller = ResilientRemoteCall(
            "scrolls",
            plugin=plugin,
            allow_fallback=True,
            enabled=scrolls_service.configured,
        )
        self.sign_caller = ResilientRemoteCall(
            "scrolls-sign",
            plugin=plugin,
            allow_fallback=allow_fallback,
            enabled=scrolls_service.configured,
        )

    def provision_address(self, nonce: int) -> str:
        """Deterministic receiving address for a vault nonce."""
        def remote() -> str:
            data = self.scrolls_service.get(f"/{self.network}/address/{nonce}")
            if not isinstance(data, str) or not data:
                raise ExternalServiceError("scrolls", "address response was not a string")
            return data

        def local() -> str:
            return MOCK_VAULT_ADDRESS

        return self.scrolls_caller.call(remote, local, label="address derivation")

    def deposit(self, amount_sats: int, beneficiary: str, policy: str) -> VaultRecord:
        def remote() -> VaultRecord:
            data = self.vault_service.post("/vaults/deposit", {
                "amount_sats": amount_sats,
                "beneficiary": beneficiary,
                "policy": policy,
            })
            if not isinstance(data, dict) or not data.get("vault_id"):
                raise ExternalServiceError("vault", "deposit response missing vault_id")
            return VaultRecord(
                id=str(data["vault_id"]),
                amount_sats=int(data.get("amount_sats", amount_sats)),
                beneficiary=str(data.get("beneficiary", beneficiary)),
                policy=str(data.get("policy", policy)),
            )

        def local() -> VaultRecord:
            return VaultRecord(
                id=f"vault_{uuid.uuid4()}",
                amount_sats=amount_sats,
                beneficiary=beneficiary,
                policy=policy,
            )

        vault = self.vault_caller.call(remote, local, label="deposit")
        self.db.upsert_vault(vault)
        return vault

    def simulate_release(self, vault_id: str, amount_sats: int) -> Dict[str, Any]:
        def remote() -> Dict[str, Any]:
            self.vault_service.post(
                f"/vaults/{vault_id}/simulate-release", {"amount_sats": amount_sats}
            )
            return {"released": True, "via": "remote"}

        def local() -> Dict[str, Any]:
            return {"released": True, "via": "mock"}

        return self.vault_caller.call(remote, local, label="release")

    def sign(self, tx_hex: str, sign_inputs=None, prev_txs=None) -> Dict[str, Any]:
        """Ask the custody service to co-sign a spend from a vault."""
        def remote() -> Dict[str, Any]:
            data = self.scrolls_service.post(f"/{self.network}/sign", {
                "sign_inputs": sign_inputs or [],
                "prev_txs": prev_txs or [],
                "tx_to_sign": tx_hex,
            })
            if not isinstance(data, str) or not data:
                raise ExternalServiceError("scrolls", "sign response was not a hex string")
            return {"signed": True, "via": "remote", "tx_hex": data}

        def local() -> Dict[str, Any]:
            return {"signed": False, "via": "mock"}

        return self.sign_caller.call(remote, local, label="sign")
