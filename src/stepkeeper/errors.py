"""
Error taxonomy for the recovery core.

None of these is fatal: the controller logs them and either carries on with
its in-memory timer or falls back to a fresh (idle) session.
"""


class StepKeeperError(Exception):
    """Base class for all stepkeeper errors."""

    pass


class PersistenceError(StepKeeperError):
    """Snapshot save/load/clear failed."""

    pass


class SchedulerError(StepKeeperError):
    """Reminder schedule/cancel failed."""

    pass


class ListenerError(StepKeeperError):
    """A lifecycle or session listener raised while handling an event."""

    def __init__(self, listener, event, cause: BaseException):
        self.listener = listener
        self.event = event
        self.cause = cause
        name = getattr(listener, "__qualname__", None) or repr(listener)
        super().__init__(f"Listener {name} failed on {event}: {cause}")


class ReconciliationError(StepKeeperError):
    """A loaded snapshot is contradictory, stale, or otherwise untrustworthy."""

    pass


class CorruptSnapshotError(ReconciliationError):
    """The stored record exists but cannot be decoded into a snapshot."""

    pass
