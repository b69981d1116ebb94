from typing import Any, Optional


class RewardsError(Exception):
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, **self.details}


class ValidationError(RewardsError):
    pass


class NotFound(RewardsError):
    status_code = 404


class InvalidTransition(RewardsError):
    pass


class InsufficientBalance(RewardsError):
    def __init__(self, required: int, available: int):
        super().__init__(
            "Insufficient tokens",
            {"required": required, "available": available},
        )
        self.required = required
        self.available = available


class StoreUnavailable(RewardsError):
    status_code = 503


class ExternalLedgerError(RewardsError):
    retryable = False


class ExternalLedgerRetryable(ExternalLedgerError):
    status_code = 503
    retryable = True


class ExternalLedgerTerminal(ExternalLedgerError):
    status_code = 502


class DuplicateSubmission(ExternalLedgerTerminal):
    """The external ledger already holds this submission (e.g. a reused proof hash)."""


class NotConfigured(RewardsError):
    status_code = 503
