"""Custom exception hierarchy for the mergeloop daemon.

This module defines the structured exception hierarchy used across the
workflow engine, the issue providers, and the git service. Only configuration
and graph-integrity errors are meant to reach an operator; everything raised
inside a single workflow step is caught by the engine and routed through the
workflow graph's own error and timeout edges.

Exception Hierarchy:
    MergeLoopError (base)
    ├── ConfigurationError
    ├── WorkflowError
    │   ├── GraphError
    │   └── HookError
    │       └── HookTimeoutError
    ├── ProviderError
    │   └── CredentialError
    ├── ExternalServiceError
    │   └── MergeCheckAmbiguousError
    └── GitOperationError

Example Usage:
    >>> from mergeloop.exceptions import ConfigurationError
    >>> try:
    ...     graph = WorkflowGraph.from_definition(definition)
    ... except ConfigurationError as e:
    ...     print(f"Invalid workflow: {e.message}")
"""


class MergeLoopError(Exception):
    """Base exception for all mergeloop errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(MergeLoopError):
    """Configuration-related errors.

    Raised when the configuration file is invalid or when the workflow graph
    fails validation. Fatal at startup and never retried.

    Examples:
        - Configuration file not found or not a YAML mapping
        - Workflow transition pointing at an unknown state
        - Choice state with a plain success transition
        - Choice state where no branch matches and no default exists
    """

    pass


class WorkflowError(MergeLoopError):
    """Workflow execution errors."""

    pass


class GraphError(WorkflowError):
    """A session references a state that is absent from the live graph.

    Usually means the session was created under an older workflow definition.
    Fatal for that session only: the scheduler routes it to the failure state.
    """

    def __init__(self, message: str, state: str | None = None) -> None:
        self.state = state
        super().__init__(message)


class HookError(WorkflowError):
    """A before or after hook exited non-zero or could not be started."""

    def __init__(self, message: str, output: str = "") -> None:
        self.output = output
        super().__init__(message)


class HookTimeoutError(HookError):
    """A hook exceeded its own timeout or the tick deadline."""

    pass


class ProviderError(MergeLoopError):
    """Issue provider failures (network, HTTP status, malformed payloads).

    Transient: the scheduler logs it and polls the provider again next tick.

    Attributes:
        provider: Display name of the provider that failed, if known
    """

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        full_message = f"{provider}: {message}" if provider else message
        super().__init__(full_message)
        self.message = message


class CredentialError(ProviderError):
    """A provider is missing its credential or its project/team mapping.

    Reported once; the scheduler disables polling of that provider for the
    affected repository until it reports itself configured again.
    """

    pass


class ExternalServiceError(MergeLoopError):
    """External service communication errors (gh CLI, HTTP APIs)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status or process exit code (if applicable)
            response_text: Response body or captured output (if applicable)
        """
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (status {status_code})"

        super().__init__(full_message)
        self.message = message


class MergeCheckAmbiguousError(ExternalServiceError):
    """CI status output could not be parsed.

    Never propagates out of merge automation: the check resolves it to the
    passing path and logs ``ci_status_ambiguous``.
    """

    pass


class GitOperationError(MergeLoopError):
    """git or gh command failures (worktrees, pull request creation, merge)."""

    pass
