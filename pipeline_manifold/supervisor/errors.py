class SupervisorError(Exception):
    """Base class for errors raised by the process tree supervisor."""

    pass


class MasterAlreadyRegisteredError(SupervisorError):
    """Raised when a second master is registered on the same supervisor."""

    pass
