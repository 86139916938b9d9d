"""
CallRoute - Exception Hierarchy

Structured exceptions for consistent error handling across the system.
All exceptions include error codes for API responses.
"""

from typing import Optional


class CallRoutingError(Exception):
    """Base exception for all CallRoute errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Routing Configuration Errors
# =============================================================================

class InvalidNumberError(CallRoutingError):
    """Dialed number is malformed, unregistered or not active."""
    code = "INVALID_NUMBER"
    status_code = 404


class ConfigurationMissing(CallRoutingError):
    """Call-flow configuration version could not be found."""
    code = "CONFIGURATION_MISSING"
    status_code = 500


class ConfigurationError(CallRoutingError):
    """Routing configuration is present but invalid."""
    code = "CONFIGURATION_ERROR"
    status_code = 500


# =============================================================================
# Provider Errors
# =============================================================================

class TelephonyError(CallRoutingError):
    """Error in telephony subsystem."""
    code = "TELEPHONY_ERROR"
    status_code = 502


class UnsupportedCapabilityError(TelephonyError):
    """Provider adapter cannot render a document needing this capability."""
    code = "UNSUPPORTED_CAPABILITY"
    status_code = 501


class UnknownProviderError(TelephonyError):
    """No adapter registered for the provider name."""
    code = "UNKNOWN_PROVIDER"
    status_code = 500


class WebhookSignatureError(TelephonyError):
    """Webhook request failed authenticity validation."""
    code = "INVALID_WEBHOOK_SIGNATURE"
    status_code = 403


# =============================================================================
# Call Session Errors
# =============================================================================

class CallSessionError(CallRoutingError):
    """Error related to call session management."""
    code = "CALL_SESSION_ERROR"
    status_code = 400


class CallNotFoundError(CallSessionError):
    """Call session not found."""
    code = "CALL_NOT_FOUND"
    status_code = 404


class CallLimitError(CallSessionError):
    """Maximum concurrent calls exceeded."""
    code = "CALL_LIMIT_EXCEEDED"
    status_code = 429


class CallTerminatedError(CallSessionError):
    """Call was disconnected; no further control documents are issued."""
    code = "CALL_TERMINATED"
    status_code = 410


class HandoffNotReadyError(CallSessionError):
    """Handoff requested for a session that has not reached L3."""
    code = "HANDOFF_NOT_READY"
    status_code = 409


# =============================================================================
# Collaborator Errors
# =============================================================================

class ClassificationError(CallRoutingError):
    """Intent classifier failed or returned an unusable response."""
    code = "CLASSIFICATION_ERROR"
    status_code = 502
