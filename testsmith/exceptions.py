"""Custom exception hierarchy for the testsmith orchestrator.

This module defines a structured exception hierarchy that separates
failures the orchestrator retries, failures it surfaces to the caller,
and failures it records against a single unit or case.

Exception Hierarchy:
    TestsmithError (base)
    ├── ConfigurationError
    ├── ValidationError
    ├── GenerationError
    │   ├── InvalidUnitError
    │   ├── TransientProviderError
    │   ├── ProviderContentError
    │   └── GenerationFailedError
    ├── RateLimitExceeded
    ├── ExecutionError
    │   └── ExecutionTimeoutError
    ├── EntityNotFoundError
    └── StoreError

Cancellation of an execution is a state transition, not an error, and has
no exception type.

Example Usage:
    >>> from testsmith.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""


class TestsmithError(Exception):
    """Base exception for all testsmith errors.

    Attributes:
        message: Human-readable error description
    """

    # Keeps pytest from collecting the Test* exception classes.
    __test__ = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(TestsmithError):
    """Configuration file missing, unparseable, or invalid."""

    pass


class ValidationError(TestsmithError):
    """Malformed or unsupported input.

    Raised for units that cannot be sent to the generation provider and for
    entities constructed with inconsistent fields. Never retried.
    """

    pass


# =============================================================================
# Generation Errors
# =============================================================================


class GenerationError(TestsmithError):
    """Base exception for failures generating tests for one unit.

    Attributes:
        message: Human-readable error description
        unit_id: Identity of the generation unit that failed
    """

    def __init__(self, message: str, unit_id: str | None = None) -> None:
        self.unit_id = unit_id

        full_message = message
        if unit_id:
            full_message = f"{message} (unit: {unit_id})"

        super().__init__(full_message)
        # Preserve original message
        self.message = message

    @property
    def transient(self) -> bool:
        """Whether retrying the same request may succeed."""
        return False


class InvalidUnitError(GenerationError, ValidationError):
    """Unit cannot be sent to the provider (no source, unknown language)."""

    pass


class TransientProviderError(GenerationError):
    """Provider overloaded, rate-limited, unreachable, or timed out.

    Attributes:
        status_code: HTTP status code returned by the provider, if any
    """

    def __init__(
        self,
        message: str,
        unit_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        if status_code and "HTTP" not in message:
            message = f"{message} (HTTP {status_code})"
        super().__init__(message, unit_id=unit_id)

    @property
    def transient(self) -> bool:
        return True


class ProviderContentError(GenerationError):
    """Provider rejected the request or returned an unusable payload.

    Covers client-side HTTP errors other than 429 and responses that
    cannot be segmented into at least one named test case.
    """

    pass


class GenerationFailedError(GenerationError):
    """Transient failures persisted past the attempt cap.

    Attributes:
        attempts: Number of attempts made before giving up
    """

    def __init__(self, message: str, unit_id: str | None = None, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message, unit_id=unit_id)


# =============================================================================
# Rate Limiting
# =============================================================================


class RateLimitExceeded(TestsmithError):
    """Request denied by a fixed-window rate limiter.

    Not fatal: the caller decides whether to wait ``retry_after_ms`` and try
    again.

    Attributes:
        key: Bucket key that was denied
        retry_after_ms: Milliseconds until the current window closes
    """

    def __init__(self, key: str, retry_after_ms: int) -> None:
        self.key = key
        self.retry_after_ms = retry_after_ms
        super().__init__(f"Rate limit exceeded for {key}, retry after {retry_after_ms}ms")

    @property
    def retry_after_seconds(self) -> int:
        """Retry delay rounded up to whole seconds, for Retry-After headers."""
        return max(1, -(-self.retry_after_ms // 1000))


# =============================================================================
# Execution Errors
# =============================================================================


class ExecutionError(TestsmithError):
    """Engine-internal execution failure.

    Test failures are not execution errors; only problems that prevent the
    engine from running the requested scope are.

    Attributes:
        execution_id: Execution that failed, if known
    """

    def __init__(self, message: str, execution_id: str | None = None) -> None:
        self.execution_id = execution_id
        super().__init__(message)


class ExecutionTimeoutError(ExecutionError):
    """A single test case exceeded its timeout.

    Attributes:
        case_id: Identifier of the case that timed out
        timeout_ms: Timeout that was exceeded
    """

    def __init__(self, case_id: str, timeout_ms: int) -> None:
        self.case_id = case_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Test case {case_id} exceeded {timeout_ms}ms")


# =============================================================================
# Storage Errors
# =============================================================================


class EntityNotFoundError(TestsmithError):
    """Requested entity does not exist in the store.

    Attributes:
        kind: Entity kind (pull_request, suite, execution)
        identifier: Identifier that was looked up
    """

    def __init__(self, kind: str, identifier: str | int) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class StoreError(TestsmithError):
    """Persisted state could not be read or written."""

    pass
