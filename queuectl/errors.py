class QueueError(Exception):
    """Base class for every error queuectl raises on purpose."""


class ValidationError(QueueError, ValueError):
    """Bad command or config input, rejected before anything is persisted."""


class InvalidCommand(ValidationError):
    pass


class LockTimeout(QueueError):
    """The store lock could not be taken in time. Nothing was written."""


class StorageCorruption(QueueError):
    """A persisted file exists but cannot be parsed."""


class DuplicateId(QueueError):
    pass


class AlreadyRunning(QueueError):
    pass


class InvalidTransition(QueueError):
    """A state change the job lifecycle does not allow."""
