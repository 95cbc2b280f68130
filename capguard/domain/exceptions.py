"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class InvalidRateError(DomainException):
    """Rate is negative, fractional or above the sane upper bound"""

    pass


class InvalidAmountError(DomainException):
    """Token amount is negative or otherwise unusable"""

    pass


class ConfigurationError(DomainException):
    """Service or market is missing required configuration"""

    pass


class MissingRateCapError(ConfigurationError):
    """Market has no rate cap configured"""

    pass


class RateSourceError(DomainException):
    """Rate source is unavailable or returned an invalid payload"""

    pass


class StorageUnavailableError(DomainException):
    """Settlement ledger cannot be reached at the start of a run"""

    pass


class TransferError(DomainException):
    """Base class for token transfer failures at the chain boundary"""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class SignerNotReadyError(TransferError):
    """No signer key is configured"""

    pass


class InsufficientFundsError(TransferError):
    """Signer cannot cover the transfer or its gas"""

    pass


class StaleNonceError(TransferError):
    """Submitted nonce was already used"""

    pass


class TransactionRevertedError(TransferError):
    """Transaction was mined but reverted"""

    pass


class ConfirmationTimeoutError(TransferError):
    """Transaction was broadcast but not confirmed in time"""

    pass


class ChainRPCError(TransferError):
    """RPC node returned an error or could not be reached"""

    pass


class UnknownJobError(DomainException):
    """No job is registered under the requested name"""

    pass
