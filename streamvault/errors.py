"""
Error taxonomy for stream settlement.

Business outcomes (NotFound, NothingVested, Unauthorized, ProofInvalid) carry
the numbers a client needs to correct and retry. ExternalServiceError only
escapes when the integration's fallback is disabled.
"""

from typing import Any, Dict, Optional


class StreamError(Exception):
    """Base class for all settlement errors."""

    code = "stream_error"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.code, "message": self.message}
        result.update(self.context)
        return result


class NotFound(StreamError):
    code = "not_found"


class NothingVested(StreamError):
    code = "nothing_vested"


class Unauthorized(StreamError):
    code = "unauthorized"


class ProofInvalid(StreamError):
    code = "proof_invalid"


class ExternalServiceError(StreamError):
    """A remote call failed (transport, timeout, non-2xx, bad body)."""

    code = "external_service_error"

    def __init__(self, service: str, message: str, status: Optional[int] = None):
        super().__init__(
            f"{service}: {message}",
            service=service,
            status=status,
        )
        self.service = service
        self.status = status
        self.upstream_message = message


class AuthError(StreamError):
    """Wallet signature check failed while a signature is required."""

    MISSING = "missing"
    MOCK_REJECTED = "mock_rejected"
    INVALID = "invalid"

    def __init__(self, kind: str, message: str = ""):
        super().__init__(message or f"wallet signature {kind}", kind=kind)
        self.kind = kind
        self.code = f"auth_{kind}"


class AuthFormatError(StreamError):
    """Signature bytes could not be decoded in any known encoding."""

    code = "auth_format"
