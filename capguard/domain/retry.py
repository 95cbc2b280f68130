"""Transfer error classification - retry policy as data"""

from enum import Enum
from typing import Dict, Type

from capguard.domain.exceptions import (
    ChainRPCError,
    ConfirmationTimeoutError,
    InsufficientFundsError,
    SignerNotReadyError,
    StaleNonceError,
    TransactionRevertedError,
)


class ErrorClass(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


TRANSFER_ERROR_POLICY: Dict[Type[BaseException], ErrorClass] = {
    InsufficientFundsError: ErrorClass.TERMINAL,
    TransactionRevertedError: ErrorClass.TERMINAL,
    SignerNotReadyError: ErrorClass.TERMINAL,
    StaleNonceError: ErrorClass.RETRYABLE,
    ChainRPCError: ErrorClass.RETRYABLE,
    # Only reached before broadcast; a post-broadcast timeout is never retried
    ConfirmationTimeoutError: ErrorClass.RETRYABLE,
    TimeoutError: ErrorClass.RETRYABLE,
}


def classify_transfer_error(exc: BaseException) -> ErrorClass:
    """
    Classify a transfer failure by its type.

    The most specific class in the exception's MRO wins. Unknown errors are
    retryable; the attempt budget still bounds them.
    """
    for cls in type(exc).__mro__:
        if cls in TRANSFER_ERROR_POLICY:
            return TRANSFER_ERROR_POLICY[cls]
    return ErrorClass.RETRYABLE
