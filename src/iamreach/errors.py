"""Exception taxonomy for iamreach.

Policy parsing errors are *returned* inside a Result by the normalizer;
gateway errors are returned by the retry wrapper and raised by the
single-principal and analysis paths.
"""
from __future__ import annotations

from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

# Error codes the control plane uses for rate-limit rejections.
THROTTLING_ERROR_CODES: frozenset[str] = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "RateExceeded",
    }
)


class IamReachError(Exception):
    """Base class for every error raised or returned by iamreach."""


# ---------------------------------------------------------------------------
# Policy parsing
# ---------------------------------------------------------------------------


class PolicyError(IamReachError):
    """A policy document could not be turned into canonical statements."""


class DecodeError(PolicyError):
    """The document is not valid percent-encoded UTF-8."""


class ParseError(PolicyError):
    """The decoded document is not valid JSON."""


class StructureError(PolicyError):
    """The JSON value is not a well-formed policy (no ``Statement``, bad field types)."""


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class GatewayError(IamReachError):
    """Non-retryable control-plane failure (not found, access denied, ...)."""

    def __init__(
        self, message: str, error_code: str, operation: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.operation = operation


class ThrottlingError(GatewayError):
    """The control plane rejected the call because of rate limiting."""


class OperationCancelled(GatewayError):
    """The caller cancelled the call or its deadline elapsed."""

    def __init__(self, operation: Optional[str] = None) -> None:
        super().__init__(
            "Operation cancelled before completion.",
            error_code="Cancelled",
            operation=operation,
        )


class PartialBatchFailure(IamReachError):
    """One or more principals could not be resolved within a bulk call."""

    def __init__(self, failures: dict[str, GatewayError]) -> None:
        ids = ", ".join(sorted(failures))
        super().__init__(
            f"Access resolution failed for {len(failures)} principal(s): {ids}"
        )
        self.failures = failures


def is_throttling_code(code: str) -> bool:
    return code in THROTTLING_ERROR_CODES


def classify_client_error(
    exc: Exception, operation: Optional[str] = None
) -> GatewayError:
    """
    Translate a botocore exception into the iamreach gateway taxonomy.

    ``GatewayError`` instances are returned unchanged.  A ``ClientError`` is
    mapped on its ``Error.Code``; any other ``BotoCoreError`` (endpoint
    unreachable, credentials missing, ...) becomes a plain GatewayError.
    """
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message") or str(exc)
        if is_throttling_code(code):
            return ThrottlingError(message, error_code=code, operation=operation)
        return GatewayError(message, error_code=code, operation=operation)
    if isinstance(exc, BotoCoreError):
        return GatewayError(
            str(exc), error_code=exc.__class__.__name__, operation=operation
        )
    raise TypeError(f"Cannot classify {exc.__class__.__name__} as a gateway error")
