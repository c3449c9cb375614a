"""Custom exception hierarchy for opsagent."""

from typing import Any


class OpsAgentError(Exception):
    """Base exception for all opsagent errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ----- Authentication Errors -----


class AuthenticationError(OpsAgentError):
    """Authentication failed."""

    pass


class TokenExpiredError(AuthenticationError):
    """JWT token has expired."""

    pass


class TokenInvalidError(AuthenticationError):
    """JWT token is invalid."""

    pass


# ----- Resource Errors -----


class NotFoundError(OpsAgentError):
    """Requested resource was not found."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            message=f"{resource} not found",
            details={"resource": resource, "identifier": identifier},
        )


class ConflictError(OpsAgentError):
    """Resource conflict (e.g., duplicate)."""

    pass


class ConversationNotFoundError(NotFoundError):
    """Conversation id belongs to another user."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(resource="Conversation", identifier=conversation_id)


class PendingActionNotFoundError(NotFoundError):
    """No open pending action matches the resume request (resolved or expired)."""

    def __init__(self, conversation_id: str, action_id: str | None = None) -> None:
        super().__init__(resource="Pending action", identifier=action_id or conversation_id)
        self.details["conversation_id"] = conversation_id


class PendingActionConflictError(ConflictError):
    """A pending action is already open for the conversation."""

    def __init__(self, conversation_id: str, open_action_id: str, open_tool: str) -> None:
        super().__init__(
            message=f"An action ({open_tool}) is awaiting confirmation in this conversation",
            details={
                "conversation_id": conversation_id,
                "open_action_id": open_action_id,
                "open_tool": open_tool,
            },
        )


# ----- Validation Errors -----


class ValidationError(OpsAgentError):
    """Input validation failed."""

    pass


class ConfigurationError(OpsAgentError):
    """Required configuration is missing or invalid."""

    pass


# ----- Throttling -----


class RateLimitExceededError(OpsAgentError):
    """Caller exceeded the request budget for a guarded function."""

    def __init__(self, function_name: str, limit: int, window_seconds: int, retry_after: int) -> None:
        super().__init__(
            message="Rate limit exceeded. Try again in a moment.",
            details={
                "function": function_name,
                "limit": limit,
                "window_seconds": window_seconds,
                "retry_after": retry_after,
            },
        )
        self.retry_after = retry_after


# ----- External Service Errors -----


class ExternalServiceError(OpsAgentError):
    """Error from an external service."""

    pass


class AIServiceError(ExternalServiceError):
    """Error from an AI vendor, carrying the HTTP status when there was one."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        super().__init__(
            message=message,
            details={"status_code": status_code, "provider": provider, "model": model},
        )
        self.status_code = status_code
        self.provider = provider
        self.model = model


class AIRateLimitError(AIServiceError):
    """AI vendor answered 429."""

    def __init__(self, message: str, provider: str | None = None, model: str | None = None) -> None:
        super().__init__(message, status_code=429, provider=provider, model=model)


class AIRequestAbortedError(AIServiceError):
    """The caller's abort signal fired before the vendor answered."""

    pass


class BusinessActionError(ExternalServiceError):
    """The business-logic layer rejected or failed a tool action."""

    def __init__(self, action: str, message: str, status_code: int | None = None) -> None:
        super().__init__(
            message=message,
            details={"action": action, "status_code": status_code},
        )
        self.status_code = status_code
