#!/usr/bin/env python3
"""
cl-stream: Core Lightning plugin for streaming Bitcoin payouts.

RPC methods:
- stream-create: fund a vault and mint a vesting stream
- stream-claim: settle a beneficiary claim against a stream
- stream-verify-proof: check a vesting proof against its claim triple
- stream-list / stream-get: inspect streams and their claims
- stream-health: store readiness and per-service outage state
"""

import os
from typing import Optional

from pyln.client import Plugin

from . import rpc_commands
from .config import StreamConfig


plugin = Plugin()

# Set in init; handlers refuse to run before it
_ctx: Optional[rpc_commands.StreamContext] = None


plugin.add_option("stream-db-path", "~/.lightning/cl_stream.db",
                  "Path to the stream database")
plugin.add_option("stream-require-wallet-sig", "false",
                  "Reject claims and creations without a valid wallet signature")
plugin.add_option("stream-demo-wallet-address", "",
                  "Wallet address used when a request carries none")
plugin.add_option("stream-attestation-url", "", "Attestation (proof) service base URL")
plugin.add_option("stream-attestation-key", "", "Attestation service API key")
plugin.add_option("stream-attestation-fallback", "true",
                  "Use mock proofs when the attestation service fails")
plugin.add_option("stream-attestation-timeout", "60",
                  "Attestation request timeout in seconds")
plugin.add_option("stream-registry-url", "", "Registry (charm) service base URL")
plugin.add_option("stream-registry-key", "", "Registry service API key")
plugin.add_option("stream-registry-fallback", "true",
                  "Keep registry state locally when the registry fails")
plugin.add_option("stream-vault-url", "", "Vault custody service base URL")
plugin.add_option("stream-vault-key", "", "Vault custody service API key")
plugin.add_option("stream-vault-fallback", "true",
                  "Use mock custody when the vault service fails")
plugin.add_option("stream-scrolls-url", "", "Vault address derivation service base URL")
plugin.add_option("stream-http-timeout", "10", "Registry/vault request timeout in seconds")
plugin.add_option("stream-rate-limit", "60", "Requests per minute per caller")


def _not_ready():
    return {"error": "not_initialized", "message": "cl-stream is still starting"}


@plugin.init()
def init(options, configuration, plugin, **kwargs):
    global _ctx

    config = StreamConfig.from_options(options)
    config.db_path = os.path.expanduser(config.db_path)
    _ctx = rpc_commands.build_context(config, plugin)

    plugin.log(
        f"cl-stream: initialized (db={config.db_path}, "
        f"require_sig={config.require_wallet_signature}, "
        f"attestation={'remote' if config.attestation_api_base else 'mock'}, "
        f"registry={'remote' if config.registry_api_base else 'mock'}, "
        f"vault={'remote' if config.vault_api_base else 'mock'})"
    )


@plugin.method("stream-create")
def stream_create(plugin, total_amount_btc, rate_sats_per_sec, beneficiary,
                  revocation_pubkey, start_unix=None, cliff_unix=None,
                  policy="standard", wallet_address=None, wallet_signature=None):
    """Fund a vault and mint a vesting stream."""
    if _ctx is None:
        return _not_ready()
    return rpc_commands.stream_create(
        _ctx, total_amount_btc, rate_sats_per_sec, beneficiary, revocation_pubkey,
        start_unix=start_unix, cliff_unix=cliff_unix, policy=policy,
        wallet_address=wallet_address, wallet_signature=wallet_signature,
    )


@plugin.method("stream-claim")
def stream_claim(plugin, stream_id, amount_sats, timestamp=None,
                 wallet_address=None, wallet_signature=None):
    """Settle a claim of up to amount_sats against a stream."""
    if _ctx is None:
        return _not_ready()
    return rpc_commands.stream_claim(
        _ctx, stream_id, amount_sats, timestamp=timestamp,
        wallet_address=wallet_address, wallet_signature=wallet_signature,
    )


@plugin.method("stream-verify-proof")
def stream_verify_proof(plugin, proof, stream_id, amount_sats, timestamp):
    """Verify a vesting proof against (stream_id, amount_sats, timestamp)."""
    if _ctx is None:
        return _not_ready()
    return rpc_commands.stream_verify_proof(_ctx, proof, stream_id, amount_sats, timestamp)


@plugin.method("stream-list")
def stream_list(plugin):
    """List all streams with their claims."""
    if _ctx is None:
        return _not_ready()
    return rpc_commands.stream_list(_ctx)


@plugin.method("stream-get")
def stream_get(plugin, stream_id, at=None):
    """Show one stream, its registry view, and what is claimable."""
    if _ctx is None:
        return _not_ready()
    return rpc_commands.stream_get(_ctx, stream_id, at=at)


@plugin.method("stream-health")
def stream_health(plugin):
    """Store readiness, uptime, and remote service outage state."""
    if _ctx is None:
        return _not_ready()
    return rpc_commands.stream_health(_ctx)


def main():
    plugin.run()


if __name__ == "__main__":
    main()
