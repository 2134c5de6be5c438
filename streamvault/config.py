"""
Configuration for cl-stream.

Values come from plugin options at `init`, falling back to the process
environment (same variable names the web deployment used).
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


def _flag(value: Any, default: bool) -> bool:
    """
    Parse a boolean toggle. Default-on toggles stay on unless 'false';
    default-off toggles turn on only for 'true'.
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if default:
        return text != "false"
    return text == "true"


@dataclass
class StreamConfig:
    """Settlement engine configuration."""
    db_path: str = "streams.db"

    require_wallet_signature: bool = False
    demo_wallet_address: str = ""

    attestation_api_base: str = ""
    attestation_api_key: str = ""
    attestation_allow_fallback: bool = True
    attestation_timeout_seconds: float = 60.0

    registry_api_base: str = ""
    registry_api_key: str = ""
    registry_allow_fallback: bool = True

    vault_api_base: str = ""
    vault_api_key: str = ""
    vault_allow_fallback: bool = True

    scrolls_api_base: str = ""
    scrolls_network: str = "testnet4"

    http_timeout_seconds: float = 10.0

    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 60
    rate_limit_strict_max_requests: int = 10

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StreamConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            db_path=env.get("STREAM_DB_PATH", defaults.db_path),
            require_wallet_signature=_flag(env.get("REQUIRE_WALLET_SIG"), False),
            demo_wallet_address=env.get("DEMO_WALLET_ADDRESS", ""),
            attestation_api_base=env.get("ZKBTC_API_BASE", ""),
            attestation_api_key=env.get("ZKBTC_API_KEY", ""),
            attestation_allow_fallback=_flag(env.get("ZKBTC_ALLOW_FALLBACK"), True),
            registry_api_base=env.get("CHARMS_API_BASE", ""),
            registry_api_key=env.get("CHARMS_API_KEY", ""),
            registry_allow_fallback=_flag(env.get("CHARMS_ALLOW_FALLBACK"), True),
            vault_api_base=env.get("GRAIL_API_BASE", ""),
            vault_api_key=env.get("GRAIL_API_KEY", ""),
            vault_allow_fallback=_flag(env.get("GRAIL_ALLOW_FALLBACK"), True),
            scrolls_api_base=env.get("SCROLLS_API_BASE", ""),
        )

    @classmethod
    def from_options(cls, options: Dict[str, Any],
                     environ: Optional[Mapping[str, str]] = None) -> "StreamConfig":
        """Plugin options override the environment where set."""
        cfg = cls.from_env(environ)
        mapping = {
            "stream-db-path": ("db_path", str),
            "stream-require-wallet-sig": ("require_wallet_signature", "flag-off"),
            "stream-demo-wallet-address": ("demo_wallet_address", str),
            "stream-attestation-url": ("attestation_api_base", str),
            "stream-attestation-key": ("attestation_api_key", str),
            "stream-attestation-fallback": ("attestation_allow_fallback", "flag-on"),
            "stream-attestation-timeout": ("attestation_timeout_seconds", float),
            "stream-registry-url": ("registry_api_base", str),
            "stream-registry-key": ("registry_api_key", str),
            "stream-registry-fallback": ("registry_allow_fallback", "flag-on"),
            "stream-vault-url": ("vault_api_base", str),
            "stream-vault-key": ("vault_api_key", str),
            "stream-vault-fallback": ("vault_allow_fallback", "flag-on"),
            "stream-scrolls-url": ("scrolls_api_base", str),
            "stream-http-timeout": ("http_timeout_seconds", float),
            "stream-rate-limit": ("rate_limit_max_requests", int),
        }
        for option, (attr, kind) in mapping.items():
            value = options.get(option)
            if value is None or value == "":
                continue
            if kind == "flag-on":
                setattr(cfg, attr, _flag(value, True))
            elif kind == "flag-off":
                setattr(cfg, attr, _flag(value, False))
            else:
                setattr(cfg, attr, kind(value))
        return cfg
