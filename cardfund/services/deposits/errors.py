"""Error taxonomy for the deposit pipeline."""


class DepositError(Exception):
    """Base class for pipeline errors."""


class TransientExternalError(DepositError):
    """Network failure, timeout or non-2xx from the indexer or issuer."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(TransientExternalError):
    """HTTP 429 from an external API."""


class ResponseValidationError(DepositError):
    """External response did not have the expected shape."""


class ReconciliationMismatch(DepositError):
    """Transfer cannot be paired with a free issuer application."""


class DuplicateTransaction(DepositError):
    """The transfer already has a recorded transaction."""
