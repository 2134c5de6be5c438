"""
Wallet message-signature verification.

Verifies Bitcoin Signed Message signatures produced by browser wallets.
Wallet SDKs disagree on framing, so a signature may arrive as:
- 65 bytes: 1 recovery-indicator byte (27-34) + 64 bytes r||s (canonical)
- 64 bytes: raw r||s with no indicator
- 66 bytes: canonical form with an extra leading or trailing format byte
- 65 bytes whose first byte is not an indicator at all ("raw")

Reconciliation order matters: it decides which real-world signatures verify,
so the indicator search order below must not be reordered.

Indicator sets by address type:
- segwit/taproot (bc1/tb1): compressed indicators 28, 30, 32, 34
- legacy: full range 27-34
"""

import base64
import binascii
import hashlib
from dataclasses import dataclass, field
from typing import List, Optional

import base58
from bech32 import decode as bech32_decode
from coincurve import PublicKey
from Crypto.Hash import RIPEMD160

from .errors import AuthError, AuthFormatError


# =============================================================================
# CONSTANTS
# =============================================================================

MESSAGE_MAGIC = b"\x18Bitcoin Signed Message:\n"
MOCK_SIGNATURE_PREFIX = "mock-signature-"

DEFAULT_INDICATOR = 27
MIN_INDICATOR = 27
MAX_INDICATOR = 34

SEGWIT_RAW_INDICATORS = (28, 30, 32, 34)
LEGACY_INDICATORS = (27, 28, 29, 30, 31, 32, 33, 34)
# Compressed first, then uncompressed
SEGWIT_EXHAUSTIVE_INDICATORS = (28, 30, 32, 34, 27, 29, 31, 33)

SEGWIT_PREFIXES = ("bc1", "tb1")
TAPROOT_PREFIXES = ("bc1p", "tb1p")

SEGWIT_P2SH_P2WPKH = "p2sh(p2wpkh)"
SEGWIT_P2WPKH = "p2wpkh"


# =============================================================================
# MESSAGE SIGNATURE PRIMITIVE
# =============================================================================

def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash160(data: bytes) -> bytes:
    return RIPEMD160.new(_sha256(data)).digest()


def _varint(n: int) -> bytes:
    if n < 0xfd:
        return bytes([n])
    if n <= 0xffff:
        return b"\xfd" + n.to_bytes(2, "little")
    if n <= 0xffffffff:
        return b"\xfe" + n.to_bytes(4, "little")
    return b"\xff" + n.to_bytes(8, "little")


def magic_hash(message: str) -> bytes:
    """Double-SHA256 of the Bitcoin Signed Message preimage."""
    msg = message.encode("utf-8")
    return _sha256(_sha256(MESSAGE_MAGIC + _varint(len(msg)) + msg))


def _segwit_redeem_hash(pubkey_hash: bytes) -> bytes:
    return hash160(b"\x00\x14" + pubkey_hash)


def _decode_bech32(address: str) -> bytes:
    lowered = address.lower()
    sep = lowered.rfind("1")
    if sep < 1:
        raise ValueError(f"not a bech32 address: {address[:16]}")
    witver, witprog = bech32_decode(lowered[:sep], lowered)
    if witver is None:
        raise ValueError(f"not a bech32 address: {address[:16]}")
    return bytes(witprog)


def _decode_base58(address: str) -> bytes:
    return base58.b58decode_check(address)[1:]


@dataclass
class ParsedSignature:
    compressed: bool
    segwit_type: Optional[str]
    recovery: int
    signature: bytes


def parse_signature(sig65: bytes) -> ParsedSignature:
    """Split a 65-byte signature into its flag fields and r||s."""
    if len(sig65) != 65:
        raise ValueError("Invalid signature length")
    flag = sig65[0] - 27
    if flag < 0 or flag > 15:
        raise ValueError("Invalid signature parameter")
    if not flag & 8:
        segwit_type = None
    elif not flag & 4:
        segwit_type = SEGWIT_P2SH_P2WPKH
    else:
        segwit_type = SEGWIT_P2WPKH
    return ParsedSignature(
        compressed=bool(flag & 12),
        segwit_type=segwit_type,
        recovery=flag & 3,
        signature=sig65[1:],
    )


def verify_message(message: str, address: str, sig65: bytes,
                   check_segwit: bool = False) -> bool:
    """
    Verify a 65-byte recoverable signature against an address.

    Raises ValueError when the signature cannot be interpreted at all
    (bad flag byte, unrecoverable key, undecodable address). Returns False
    when a key is recovered but does not match the address.
    """
    parsed = parse_signature(sig65)
    if check_segwit and not parsed.compressed:
        raise ValueError(
            "checkSegwitAlways can only be used with a compressed pubkey signature flagbyte"
        )

    try:
        pubkey = PublicKey.from_signature_and_message(
            parsed.signature + bytes([parsed.recovery]),
            magic_hash(message),
            hasher=None,
        )
    except Exception as e:
        raise ValueError(f"public key recovery failed: {e}") from e
    pubkey_hash = hash160(pubkey.format(compressed=parsed.compressed))

    if parsed.segwit_type == SEGWIT_P2SH_P2WPKH:
        actual = _segwit_redeem_hash(pubkey_hash)
        expected = _decode_base58(address)
    elif parsed.segwit_type == SEGWIT_P2WPKH:
        actual = pubkey_hash
        expected = _decode_bech32(address)
    elif check_segwit:
        try:
            expected = _decode_bech32(address)
            return pubkey_hash == expected
        except ValueError:
            # base58 can be p2pkh or p2sh-p2wpkh
            expected = _decode_base58(address)
            return expected in (pubkey_hash, _segwit_redeem_hash(pubkey_hash))
    else:
        actual = pubkey_hash
        expected = _decode_base58(address)
    return actual == expected


# =============================================================================
# DECODING
# =============================================================================

def decode_signature(signature: str) -> bytes:
    """
    Decode a wallet signature from base64 or hex (optionally 0x-prefixed).

    Many hex strings are also valid base64, so both decodings are attempted
    and the one with a workable length (64-66 bytes) wins.
    """
    cleaned = signature.strip()
    candidates: List[bytes] = []

    try:
        decoded = base64.b64decode(cleaned, validate=True)
        if decoded:
            candidates.append(decoded)
    except (binascii.Error, ValueError):
        pass

    hex_str = cleaned[2:] if cleaned.lower().startswith("0x") else cleaned
    if len(hex_str) % 2 == 0:
        try:
            decoded = bytes.fromhex(hex_str)
            if decoded:
                candidates.append(decoded)
        except ValueError:
            pass

    for candidate in candidates:
        if 64 <= len(candidate) <= 66:
            return candidate
    if candidates:
        return candidates[0]
    raise AuthFormatError(
        f"Invalid signature format. Expected base64 or hex "
        f"(length: {len(cleaned)})",
        length=len(cleaned),
    )


def is_indicator(value: int) -> bool:
    return MIN_INDICATOR <= value <= MAX_INDICATOR


def is_segwit_address(address: str) -> bool:
    return address.startswith(SEGWIT_PREFIXES) or address.startswith(TAPROOT_PREFIXES)


# =============================================================================
# AUTHENTICATOR
# =============================================================================

@dataclass
class SignatureCheck:
    """Outcome of one verification, with every attempt kept for debugging."""
    verified: bool = False
    strategy: str = ""
    indicator: Optional[int] = None
    attempts: List[str] = field(default_factory=list)
    error: str = ""


class SignatureAuthenticator:
    """Verifies wallet signatures over canonical messages."""

    def __init__(self, plugin=None):
        self.plugin = plugin

    def _log(self, msg: str, level: str = "debug") -> None:
        if self.plugin:
            self.plugin.log(f"cl-stream: signature: {msg}", level=level)

    def verify(self, message: str, address: str,
               signature: Optional[str] = None, require: bool = False) -> bool:
        return self.check(message, address, signature, require).verified

    def check(self, message: str, address: str,
              signature: Optional[str] = None,
              require: bool = False) -> SignatureCheck:
        """
        Verify and explain. Raises AuthError/AuthFormatError only when
        `require` is set; otherwise failures come back as verified=False.
        """
        result = SignatureCheck()

        if not signature:
            if require:
                raise AuthError(AuthError.MISSING, "Missing wallet signature")
            result.error = "missing"
            return result

        if signature.startswith(MOCK_SIGNATURE_PREFIX):
            if require:
                raise AuthError(
                    AuthError.MOCK_REJECTED,
                    "Mock signatures are not allowed when signature verification is required",
                )
            result.error = "mock"
            return result

        try:
            raw = decode_signature(signature)
            self._reconcile(message, address, raw, require, result)
        except AuthFormatError as e:
            result.error = e.message
            self._log(f"unparseable signature for {address[:16]}: {e.message}", level="warn")
            if require:
                raise
            return result
        except ValueError as e:
            result.error = str(e)
            self._log(f"verification error for {address[:16]}: {e}", level="debug")

        if result.verified:
            self._log(f"verified {address[:16]} via {result.strategy} "
                      f"(indicator {result.indicator})")
        elif require:
            raise AuthError(
                AuthError.INVALID,
                f"Invalid wallet signature: {result.error or 'verification failed'} "
                f"(tried {len(result.attempts)} candidates)",
            )
        else:
            self._log(f"signature not verified for {address[:16]} after "
                      f"{len(result.attempts)} attempts", level="warn")
        return result

    def _try(self, message: str, address: str, core: bytes, indicator: int,
             check_segwit: bool, strategy: str, result: SignatureCheck) -> bool:
        label = f"{strategy}/{indicator}"
        result.attempts.append(label)
        try:
            ok = verify_message(message, address, bytes([indicator]) + core, check_segwit)
        except ValueError as e:
            result.error = str(e)
            return False
        if ok:
            result.verified = True
            result.strategy = strategy
            result.indicator = indicator
        return ok

    def _search(self, message: str, address: str, candidates, indicators,
                check_segwit: bool, result: SignatureCheck) -> bool:
        for strategy, core in candidates:
            if len(core) != 64:
                continue
            for indicator in indicators:
                if self._try(message, address, core, indicator, check_segwit,
                             strategy, result):
                    return True
        return False

    def _reconcile(self, message: str, address: str, raw: bytes,
                   require: bool, result: SignatureCheck) -> None:
        segwit = is_segwit_address(address)
        sig = raw

        if len(sig) == 66:
            if is_indicator(sig[0]):
                sig = sig[:65]
            elif is_indicator(sig[1]):
                sig = sig[1:]
            else:
                # Format byte on both ends: brute force the plausible 64-byte cores.
                candidates = [
                    ("66:bytes1-65", raw[1:65]),
                    ("66:bytes2-66", raw[2:66]),
                    ("66:bytes0-64", raw[0:64]),
                ]
                indicators = SEGWIT_EXHAUSTIVE_INDICATORS if segwit else LEGACY_INDICATORS
                if not self._search(message, address, candidates, indicators,
                                    segwit, result):
                    result.error = result.error or "no 66-byte extraction verified"
                return
        elif len(sig) == 64:
            sig = bytes([DEFAULT_INDICATOR]) + sig
        elif len(sig) != 65:
            raise AuthFormatError(
                f"Signature buffer is {len(sig)} bytes, expected 64-66 bytes",
                length=len(sig),
            )

        first = sig[0]
        if not is_indicator(first):
            core = sig[1:65]
            if len(core) != 64:
                core = sig[0:64]
            indicators = SEGWIT_RAW_INDICATORS if segwit else LEGACY_INDICATORS
            self._search(message, address, [("raw", core)], indicators, segwit, result)
            return

        if segwit and first % 2 == 1 and require:
            if len(raw) == 66:
                candidates = [
                    ("bytes1-65", raw[1:65]),
                    ("bytes2-66", raw[2:66]),
                    ("bytes0-64", raw[0:64]),
                ]
            else:
                candidates = [("bytes1-65", sig[1:65])]
            self._search(message, address, candidates,
                         SEGWIT_EXHAUSTIVE_INDICATORS, segwit, result)
            return

        self._try(message, address, sig[1:], first, segwit, "as-is", result)
