"""Exception taxonomy for workflow execution.

GraphError and CheckpointIncompatibleError surface before any node runs.
InputValidationError and ProcessorError abort the current run (or the
affected branch in parallel continue/collect mode). PersistenceError is
only ever logged: best-effort writes never fail a run.
"""


class WorkflowEngineError(Exception):
    """Base class for all engine errors."""

    pass


class GraphError(WorkflowEngineError):
    """Raised when the workflow graph is malformed."""

    pass


class CycleError(GraphError):
    """Raised when the workflow graph contains a cycle."""

    def __init__(self, node_ids: list[str]):
        self.node_ids = node_ids
        super().__init__(f"Workflow contains a cycle involving nodes: {', '.join(node_ids)}")


class InputValidationError(WorkflowEngineError):
    """Raised when a node's inputs are missing or unresolvable."""

    def __init__(self, message: str, node_id: str, node_name: str, status: str):
        self.node_id = node_id
        self.node_name = node_name
        self.status = status
        super().__init__(message)


class ProcessorError(WorkflowEngineError):
    """Raised when a node processor reports or raises an error."""

    def __init__(self, message: str, node_id: str, node_name: str, retryable: bool = False):
        self.node_id = node_id
        self.node_name = node_name
        self.retryable = retryable
        super().__init__(message)


class CheckpointIncompatibleError(WorkflowEngineError):
    """Raised when a resume is refused because the checkpoint no longer fits the workflow."""

    pass


class PersistenceError(WorkflowEngineError):
    """Raised by stores on best-effort write failures."""

    pass


class ExecutionCancelledError(WorkflowEngineError):
    """Recorded as the failure of a run whose task was cancelled mid-flight (queue timeout or stop)."""

    pass
