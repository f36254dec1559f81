"""
Custom exception classes for the application.
Provides structured error handling across ingestion, settlement and notifications.
"""

from typing import Any, Optional, Dict


class TipFlowException(Exception):
    """Base exception class for TipFlow backend."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(TipFlowException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(TipFlowException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ValidationError(TipFlowException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(TipFlowException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class AuthenticationError(TipFlowException):
    """Raised when authentication fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTHENTICATION_ERROR", details)


class AuthorizationError(TipFlowException):
    """Raised when authorization fails."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "AUTHORIZATION_ERROR"
    ):
        super().__init__(message, code, details)


class ExternalServiceError(TipFlowException):
    """Raised when an external service error occurs."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "EXTERNAL_SERVICE_ERROR"
    ):
        super().__init__(message, code, details)


class TransientExternalError(ExternalServiceError):
    """Timeout or temporary unavailability; safe to retry."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "TRANSIENT_EXTERNAL_ERROR")


class ChainError(TipFlowException):
    """Raised when there's an EVM chain or contract error."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "CHAIN_ERROR"
    ):
        super().__init__(message, code, details)


# Webhook exceptions
class WebhookSignatureError(AuthenticationError):
    """Raised when a webhook body does not match its signature header."""

    def __init__(self, reason: str):
        super().__init__(
            f"Invalid webhook signature: {reason}",
            {"reason": reason}
        )


class UnsupportedEventError(ValidationError):
    """Raised for well-formed webhook events that never produce a reward."""

    def __init__(self, reason: str, event_type: Optional[str] = None):
        super().__init__(reason, {"event_type": event_type})
        self.reason = reason


# Settlement exceptions
class ExecutorNotAuthorizedError(AuthorizationError):
    """Raised when the backend wallet is not an executor on the batch contract."""

    def __init__(self, executor: str, contract: str):
        super().__init__(
            f"Backend wallet {executor} is not an executor on contract {contract}",
            {"executor": executor, "contract": contract},
            "EXECUTOR_NOT_AUTHORIZED"
        )


class BatchRevertedError(ChainError):
    """Raised when a batch transaction is mined with a failed status."""

    def __init__(self, tx_hash: str, reason: Optional[str] = None):
        super().__init__(
            f"Batch transaction reverted: {tx_hash}",
            {"tx_hash": tx_hash, "reason": reason},
            "BATCH_REVERTED"
        )


class InvalidStateTransitionError(TipFlowException):
    """Raised when a ledger entry is asked to move out of a state it is not in."""

    def __init__(self, entry_ids, expected: str, target: str):
        super().__init__(
            f"Cannot move entries to {target}: not all are {expected}",
            {"entry_ids": list(entry_ids), "expected": expected, "target": target},
            "INVALID_STATE_TRANSITION"
        )
