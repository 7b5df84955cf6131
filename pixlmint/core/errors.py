from typing import TYPE_CHECKING, Optional

from starlette import status

if TYPE_CHECKING:
    from pixlmint.domains.mint.schemas import PinnedBundle


class MintPipelineError(Exception):
    """Base class for every failure surfaced by the mint pipeline.

    ``pinned`` is filled in by the orchestrator once content has been pinned,
    so the caller can retry without losing the content identifiers.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, pinned: Optional["PinnedBundle"] = None):
        super().__init__(message)
        self.message = message
        self.pinned = pinned

    @property
    def code(self) -> str:
        return type(self).__name__


class ValidationError(MintPipelineError):
    status_code = status.HTTP_400_BAD_REQUEST


# Payment
class PaymentError(MintPipelineError):
    status_code = status.HTTP_400_BAD_REQUEST


class PaymentNotFoundError(PaymentError):
    pass


class InsufficientPaymentError(PaymentError):
    pass


class WrongRecipientError(PaymentError):
    pass


class PaymentAlreadyUsedError(PaymentError):
    status_code = status.HTTP_409_CONFLICT


# Reservation
class MintConflictError(MintPipelineError):
    status_code = status.HTTP_409_CONFLICT


class AlreadyMintedError(MintConflictError):
    pass


class MintInProgressError(MintConflictError):
    pass


class ChainUnavailableError(MintPipelineError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


# Asset resolution
class AssetNotFoundError(MintPipelineError):
    status_code = status.HTTP_404_NOT_FOUND


class AssetFetchError(MintPipelineError):
    status_code = status.HTTP_502_BAD_GATEWAY


class PinningError(MintPipelineError):
    status_code = status.HTTP_502_BAD_GATEWAY


# Minting
class MintError(MintPipelineError):
    def __init__(self, message: str, *, transaction_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.transaction_id = transaction_id


class MintSubmissionError(MintError):
    status_code = status.HTTP_502_BAD_GATEWAY


class MintExecutionError(MintError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ConfirmationTimeoutError(MintError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class ReportingError(Exception):
    """Persistence webhook failure. Logged, never surfaced to the caller."""


# Chain reads
class ChainError(Exception):
    """RPC failure while reading chain state."""


class NotFoundError(ChainError):
    """The transaction, receipt or token does not exist (yet)."""


class ContractCallError(ChainError):
    """A read-only contract call reverted."""


class RequestRejectedError(ChainError):
    """The node answered with a JSON-RPC error, e.g. a malformed argument."""


class InternalError(MintPipelineError):
    """Anything the pipeline did not anticipate."""
