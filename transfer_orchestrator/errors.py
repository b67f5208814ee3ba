"""
Error taxonomy for the transfer orchestrator.

Predictable domain conditions travel as result variants carrying an ErrorKind
(see schemas.py). Only the two hard failures below are raised.
"""
from enum import Enum

GENERIC_FAILURE_MESSAGE = "Sorry, I couldn't complete that right now. Please try again in a moment."

class ErrorKind(str, Enum):
    USER_INPUT = "user_input"
    VERIFICATION_FAILURE = "verification_failure"
    AUTHORIZATION_REQUIRED = "authorization_required"
    PROVIDER_FAULT = "provider_fault"
    CONCURRENCY_HAZARD = "concurrency_hazard"

class OrchestratorError(Exception):
    """Base class for hard failures."""

class ProviderUnavailable(OrchestratorError):
    """A provider could not be reached, timed out, or answered with an unreadable body."""

    def __init__(self, provider: str, detail: str):
        self.provider = provider
        self.detail = detail
        super().__init__(f"{provider} unavailable: {detail}")

class CorruptStateError(OrchestratorError):
    """Persisted session state could not be decoded."""

    def __init__(self, user_id: str, detail: str):
        self.user_id = user_id
        self.detail = detail
        super().__init__(f"Corrupt session state for {user_id}: {detail}")
