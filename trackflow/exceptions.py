"""Custom exception hierarchy for the trackflow automation engine.

This module defines a structured exception hierarchy that enables
precise error handling and user-friendly error messages throughout
the rule engine.

Exception Hierarchy:
    TrackflowError (base)
    ├── ConfigurationError
    ├── ValidationError
    ├── NotFoundError
    ├── ExpressionError
    │   ├── MissingContextError
    │   ├── UnsupportedExpressionError
    │   └── PropertyNotFoundError
    ├── ActionExecutionError
    └── ExternalServiceError

Propagation:
    Only ValidationError and NotFoundError surface from engine operations.
    ExpressionError subclasses are swallowed per placeholder by the smart
    value evaluator, and ActionExecutionError is always captured into an
    ActionResult by the action executor.

Example Usage:
    >>> from trackflow.exceptions import NotFoundError
    >>> try:
    ...     await engine.execute_rule("missing", context)
    ... except NotFoundError as e:
    ...     print(e.message)
"""

from typing import Any


class TrackflowError(Exception):
    """Base exception for all trackflow errors.

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


class ConfigurationError(TrackflowError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing environment variable referenced from the config
    """

    pass


class ValidationError(TrackflowError):
    """A rule definition or expression is malformed.

    Raised synchronously and never retried. The individual problems found
    by the rule validator are kept on ``errors`` so callers can show all of
    them at once.

    Attributes:
        errors: List of ``{"field", "message", "code"}`` dictionaries
    """

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            errors: Individual validation problems
        """
        self.errors = errors or []
        super().__init__(message)


class NotFoundError(TrackflowError):
    """An unknown rule or execution id was requested.

    Attributes:
        resource: Kind of resource that was looked up (e.g. "rule")
        identifier: The id that was not found
    """

    def __init__(self, resource: str, identifier: str) -> None:
        """Initialize exception.

        Args:
            resource: Kind of resource
            identifier: Missing identifier
        """
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource.capitalize()} not found: {identifier}")


class ExpressionError(TrackflowError):
    """Base class for smart value evaluation failures."""

    pass


class MissingContextError(ExpressionError):
    """A required execution context field is absent (e.g. no issue key)."""

    pass


class UnsupportedExpressionError(ExpressionError):
    """The expression uses a form the evaluator does not understand."""

    pass


class PropertyNotFoundError(ExpressionError):
    """A dotted path segment does not exist in the traversed data."""

    pass


class ActionExecutionError(TrackflowError):
    """A single action failed against the tracker.

    Always captured into the action's result, never propagated out of the
    action executor.

    Attributes:
        action_type: Type of action that failed
    """

    def __init__(self, message: str, action_type: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            action_type: Type of the failing action
        """
        self.action_type = action_type
        super().__init__(message)


class ExternalServiceError(TrackflowError):
    """External service communication errors.

    Raised when the tracker REST API (or a webhook endpoint) answers with
    an error status or cannot be reached.

    Examples:
        - HTTP request failed
        - API returned error
        - Service timeout
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.message = message
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message
