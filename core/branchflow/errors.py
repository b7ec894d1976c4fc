"""Exception hierarchy for the workflow engine."""


class BranchflowError(Exception):
    """Base class for every error raised by the engine."""

    pass


# === COMPILATION ===


class CompileError(BranchflowError):
    """A workflow could not be turned into an executable pipeline."""

    pass


class InvalidWorkflowError(CompileError):
    """The workflow graph references nodes that do not exist."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid workflow: " + "; ".join(problems))


class CyclicWorkflowError(CompileError):
    """The workflow graph contains a cycle."""

    def __init__(self, node_ids: list[str]):
        self.node_ids = node_ids
        super().__init__(f"Workflow contains a cycle through: {' -> '.join(node_ids)}")


class PluginNotFoundError(CompileError):
    """No node plugin is registered for a node's type."""

    def __init__(self, node_id: str, node_type: str):
        self.node_id = node_id
        self.node_type = node_type
        super().__init__(f"No plugin found for node type: {node_type} (node {node_id})")


class InvalidNodeConfigError(CompileError):
    """A node's config does not satisfy its plugin's config schema."""

    def __init__(self, node_id: str, errors: list[str]):
        self.node_id = node_id
        self.errors = errors
        super().__init__(f"Invalid config for node {node_id}: {'; '.join(errors)}")


# === NODE EXECUTION ===


class NodeProcessingError(BranchflowError):
    """A node plugin failed while processing an input."""

    def __init__(self, node_id: str, message: str, cause: BaseException | None = None):
        self.node_id = node_id
        self.cause = cause
        super().__init__(f"Node {node_id} failed: {message}")


class NodeTimeoutError(NodeProcessingError):
    """A node did not finish within its allotted time."""

    def __init__(self, node_id: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(node_id, f"timed out after {timeout_ms}ms")


class TokenBudgetExceededError(NodeProcessingError):
    """A stream path used more tokens than allowed."""

    def __init__(self, node_id: str, used: int, limit: int):
        self.used = used
        self.limit = limit
        super().__init__(node_id, f"token budget exceeded ({used} > {limit})")


class MaxStepsExceededError(NodeProcessingError):
    """A stream path went through more nodes than allowed."""

    def __init__(self, node_id: str, max_steps: int):
        self.max_steps = max_steps
        super().__init__(node_id, f"exceeded maximum of {max_steps} steps")


# === LOOKUPS ===


class ExecutionNotFoundError(BranchflowError, LookupError):
    """The execution is not active (or not known at all)."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")


class BranchNotFoundError(BranchflowError, LookupError):
    """The branch is not part of the given active execution."""

    def __init__(self, branch_id: str, execution_id: str):
        self.branch_id = branch_id
        self.execution_id = execution_id
        super().__init__(f"Branch {branch_id} not found for execution {execution_id}")


class MetricsNotFoundError(BranchflowError, LookupError):
    """The execution was never monitored, or monitoring was stopped."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"No metrics found for execution {execution_id}")


class RecordNotFoundError(BranchflowError, LookupError):
    """A storage update targeted a record that was never saved."""

    pass


class BranchLimitError(BranchflowError):
    """An execution already holds its maximum number of branches."""

    def __init__(self, execution_id: str, max_branches: int):
        self.execution_id = execution_id
        self.max_branches = max_branches
        super().__init__(f"Execution {execution_id} reached its limit of {max_branches} branches")
