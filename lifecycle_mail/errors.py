"""Exception hierarchy for the workflow engine."""


class WorkflowError(Exception):
    """Base class for all lifecycle mail errors."""


class CatalogError(WorkflowError):
    """A workflow definition is malformed. Fatal at startup."""


class PersistenceError(WorkflowError):
    """A single read or write against the subscription store failed."""


class DuplicateEnrollmentError(PersistenceError):
    """The store rejected a second active subscription for (user, workflow)."""


class BatchReadError(WorkflowError):
    """The due-subscription batch could not be read at all."""


class TransportError(WorkflowError):
    """The outbound transport rejected or failed a single message."""
