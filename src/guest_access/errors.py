class DomainError(Exception):
    """
    Base class for predictable domain errors raised by the orchestrator.
    """


class ValidationError(DomainError):
    """Bad input shape or timestamps. Rejected synchronously, never retried."""


class NotFoundError(DomainError):
    """A booking, lock or job that an operation names does not exist."""


class ConfigurationError(DomainError):
    """
    Missing/invalid configuration that retries cannot fix, such as a lock
    that is not mapped to the booking's unit.
    """


class TransientError(DomainError):
    """
    Failure expected to clear on its own (network, vendor, store).
    """


class LockProviderError(TransientError):
    """
    Lock vendor rejected or failed a request.
    """


class BookingSystemError(TransientError):
    """
    External booking system could not be reached or returned an error.
    """
