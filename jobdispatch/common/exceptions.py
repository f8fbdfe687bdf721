# jobdispatch/common/exceptions.py


class JobDispatchException(Exception):
    """Base exception for the jobdispatch library."""

    pass


class BrokerUnavailableError(JobDispatchException):
    """Raised when the queue backend cannot be reached."""

    pass


class InvalidPayloadError(JobDispatchException):
    """Raised when a payload does not match its queue's schema."""

    pass


class UnknownQueueError(JobDispatchException):
    pass


class JobLoadError(JobDispatchException):
    """Raised when a processor cannot be loaded from its dotted path."""

    pass
