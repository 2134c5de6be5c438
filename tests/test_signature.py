"""
Tests for wallet signature verification and format reconciliation.

Signatures are produced with coincurve over the Bitcoin Signed Message
hash, then re-framed the way different wallet SDKs emit them.
"""

import base64
import json
from unittest.mock import MagicMock

import base58
import pytest
from bech32 import encode as bech32_encode
from coincurve import PrivateKey

from streamvault.errors import AuthError, AuthFormatError
from streamvault.signature import (
    SignatureAuthenticator,
    decode_signature,
    hash160,
    is_segwit_address,
    magic_hash,
    parse_signature,
    verify_message,
)


# =============================================================================
# Test helpers
# =============================================================================

KEY = PrivateKey(bytes.fromhex("11" * 32))
OTHER_KEY = PrivateKey(bytes.fromhex("22" * 32))

MESSAGE = json.dumps({
    "action": "claimStream",
    "walletAddress": "placeholder",
    "streamId": "stream_1",
    "amountSats": 25000,
    "timestamp": 1200,
}, separators=(",", ":"))


def p2pkh(key, compressed=True):
    pubkey = key.public_key.format(compressed=compressed)
    return base58.b58encode_check(b"\x00" + hash160(pubkey)).decode()


def p2wpkh(key):
    return bech32_encode("bc", 0, hash160(key.public_key.format(compressed=True)))


def sign(key, message):
    """Returns (r||s, recovery id)."""
    sig = key.sign_recoverable(magic_hash(message), hasher=None)
    return sig[:64], sig[64]


def b64(data):
    return base64.b64encode(data).decode()


def compressed_sig(key, message):
    core, recid = sign(key, message)
    return bytes([31 + recid]) + core


@pytest.fixture
def auth():
    plugin = MagicMock()
    plugin.log = MagicMock()
    return SignatureAuthenticator(plugin)


# =============================================================================
# Message signature primitive
# =============================================================================

class TestVerifyMessage:

    def test_compressed_p2pkh(self):
        sig = compressed_sig(KEY, MESSAGE)
        assert verify_message(MESSAGE, p2pkh(KEY), sig) is True

    def test_uncompressed_p2pkh(self):
        core, recid = sign(KEY, MESSAGE)
        sig = bytes([27 + recid]) + core
        assert verify_message(MESSAGE, p2pkh(KEY, compressed=False), sig) is True

    def test_wrong_address(self):
        sig = compressed_sig(KEY, MESSAGE)
        assert verify_message(MESSAGE, p2pkh(OTHER_KEY), sig) is False

    def test_wrong_message(self):
        sig = compressed_sig(KEY, MESSAGE)
        assert verify_message(MESSAGE + " ", p2pkh(KEY), sig) is False

    def test_p2wpkh_flag(self):
        core, recid = sign(KEY, MESSAGE)
        sig = bytes([39 + recid]) + core
        assert verify_message(MESSAGE, p2wpkh(KEY), sig) is True

    def test_check_segwit_with_bech32(self):
        sig = compressed_sig(KEY, MESSAGE)
        assert verify_message(MESSAGE, p2wpkh(KEY), sig, check_segwit=True) is True

    def test_check_segwit_rejects_uncompressed_flag(self):
        core, recid = sign(KEY, MESSAGE)
        with pytest.raises(ValueError):
            verify_message(MESSAGE, p2wpkh(KEY), bytes([27 + recid]) + core,
                           check_segwit=True)

    def test_bad_flag_byte(self):
        core, _ = sign(KEY, MESSAGE)
        with pytest.raises(ValueError):
            verify_message(MESSAGE, p2pkh(KEY), bytes([5]) + core)

    def test_parse_signature_fields(self):
        core, _ = sign(KEY, MESSAGE)
        parsed = parse_signature(bytes([33]) + core)
        assert parsed.compressed is True
        assert parsed.segwit_type is None
        assert parsed.recovery == 2

        parsed = parse_signature(bytes([37]) + core)
        assert parsed.segwit_type == "p2sh(p2wpkh)"
        parsed = parse_signature(bytes([41]) + core)
        assert parsed.segwit_type == "p2wpkh"
        assert parsed.recovery == 2


# =============================================================================
# Decoding
# =============================================================================

class TestDecodeSignature:

    def test_base64(self):
        sig = compressed_sig(KEY, MESSAGE)
        assert decode_signature(b64(sig)) == sig

    def test_hex_with_and_without_prefix(self):
        sig = compressed_sig(KEY, MESSAGE)
        assert decode_signature(sig.hex()) == sig
        assert decode_signature("0x" + sig.hex()) == sig

    def test_whitespace_stripped(self):
        sig = compressed_sig(KEY, MESSAGE)
        assert decode_signature(f"  {b64(sig)}\n") == sig

    def test_garbage_raises_format_error(self):
        with pytest.raises(AuthFormatError):
            decode_signature("not a signature!")

    def test_segwit_detection(self):
        assert is_segwit_address("bc1qxyz")
        assert is_segwit_address("tb1pxyz")
        assert not is_segwit_address("1BoatSLRHtKNngkdXEeobR76b53LETtpyT")


# =============================================================================
# Authenticator
# =============================================================================

class TestAuthenticatorSentinels:

    def test_missing_signature_soft(self, auth):
        assert auth.verify(MESSAGE, p2pkh(KEY), None) is False

    def test_missing_signature_required(self, auth):
        with pytest.raises(AuthError) as exc:
            auth.verify(MESSAGE, p2pkh(KEY), None, require=True)
        assert exc.value.kind == AuthError.MISSING
        assert exc.value.code == "auth_missing"

    def test_mock_signature_soft(self, auth):
        assert auth.verify(MESSAGE, p2pkh(KEY), "mock-signature-123") is False

    def test_mock_signature_required(self, auth):
        with pytest.raises(AuthError) as exc:
            auth.verify(MESSAGE, p2pkh(KEY), "mock-signature-123", require=True)
        assert exc.value.code == "auth_mock_rejected"

    def test_unparseable_soft(self, auth):
        assert auth.verify(MESSAGE, p2pkh(KEY), "%%%") is False

    def test_unparseable_required(self, auth):
        with pytest.raises(AuthFormatError):
            auth.verify(MESSAGE, p2pkh(KEY), "%%%", require=True)

    def test_wrong_length_required(self, auth):
        with pytest.raises(AuthFormatError):
            auth.verify(MESSAGE, p2pkh(KEY), "ab" * 40, require=True)


class TestAuthenticatorFormats:

    def test_canonical_65_bytes(self, auth):
        sig = compressed_sig(KEY, MESSAGE)
        check = auth.check(MESSAGE, p2pkh(KEY), b64(sig), require=True)
        assert check.verified is True
        assert check.strategy == "as-is"
        assert check.indicator == sig[0]

    def test_canonical_65_bytes_hex(self, auth):
        sig = compressed_sig(KEY, MESSAGE)
        assert auth.verify(MESSAGE, p2pkh(KEY), sig.hex(), require=True) is True

    def test_segwit_address_with_compressed_flag(self, auth):
        sig = compressed_sig(KEY, MESSAGE)
        assert auth.verify(MESSAGE, p2wpkh(KEY), b64(sig)) is True
        assert auth.verify(MESSAGE, p2wpkh(KEY), b64(sig), require=True) is True

    def test_64_bytes_segwit_required_searches(self, auth):
        core, recid = sign(KEY, MESSAGE)
        check = auth.check(MESSAGE, p2wpkh(KEY), b64(core), require=True)
        assert check.verified is True
        assert check.indicator in (31 + recid, 27 + recid)
        assert len(check.attempts) >= 1

    def test_64_bytes_segwit_not_required_fails_soft(self, auth):
        core, _ = sign(KEY, MESSAGE)
        assert auth.verify(MESSAGE, p2wpkh(KEY), b64(core)) is False

    def test_64_bytes_legacy_uncompressed(self, auth):
        # Default indicator 27 means recovery id 0, uncompressed key
        for i in range(64):
            message = f"{MESSAGE}#{i}"
            core, recid = sign(KEY, message)
            if recid == 0:
                break
        else:
            pytest.fail("no recovery id 0 signature found")
        address = p2pkh(KEY, compressed=False)
        assert auth.verify(message, address, b64(core), require=True) is True

    def test_66_bytes_trailing_extra(self, auth):
        sig = compressed_sig(KEY, MESSAGE) + b"\x01"
        check = auth.check(MESSAGE, p2pkh(KEY), b64(sig), require=True)
        assert check.verified is True
        assert check.strategy == "as-is"

    def test_66_bytes_leading_format_byte(self, auth):
        sig = b"\x00" + compressed_sig(KEY, MESSAGE)
        assert auth.verify(MESSAGE, p2pkh(KEY), b64(sig), require=True) is True

    def test_66_bytes_no_indicator_brute_force(self, auth):
        for i in range(64):
            message = f"{MESSAGE}#{i}"
            core, recid = sign(KEY, message)
            if not 27 <= core[0] <= 34:
                break
        else:
            pytest.fail("no signature with a non-indicator first byte found")
        sig = b"\x00" + core + b"\x00"
        check = auth.check(message, p2pkh(KEY), sig.hex(), require=True)
        assert check.verified is True
        assert check.strategy == "66:bytes1-65"
        assert check.indicator == 31 + recid

    def test_raw_mode_leading_zero(self, auth):
        core, recid = sign(KEY, MESSAGE)
        sig = b"\x00" + core
        check = auth.check(MESSAGE, p2pkh(KEY), b64(sig), require=True)
        assert check.verified is True
        assert check.strategy == "raw"
        assert check.indicator == 31 + recid

    def test_corrupted_signature_soft(self, auth):
        sig = bytearray(compressed_sig(KEY, MESSAGE))
        sig[5] ^= 0xFF
        assert auth.verify(MESSAGE, p2pkh(KEY), b64(bytes(sig))) is False

    def test_corrupted_signature_required(self, auth):
        sig = bytearray(compressed_sig(KEY, MESSAGE))
        sig[5] ^= 0xFF
        with pytest.raises(AuthError) as exc:
            auth.verify(MESSAGE, p2pkh(KEY), b64(bytes(sig)), require=True)
        assert exc.value.kind == AuthError.INVALID

    def test_other_signer_rejected(self, auth):
        sig = compressed_sig(OTHER_KEY, MESSAGE)
        assert auth.verify(MESSAGE, p2pkh(KEY), b64(sig)) is False

    def test_unverified_soft_failure_is_logged(self, auth):
        sig = compressed_sig(OTHER_KEY, MESSAGE)
        auth.verify(MESSAGE, p2pkh(KEY), b64(sig))
        levels = [c.kwargs.get("level") for c in auth.plugin.log.call_args_list]
        assert "warn" in levels
