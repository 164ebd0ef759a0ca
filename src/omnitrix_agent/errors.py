from __future__ import annotations


class AgentError(Exception):
    """Base class for every error raised by the agent."""


class ToolError(AgentError):
    """A tool call failed. The loop reports it to the model and keeps going."""


class ValidationError(ToolError):
    pass


class AccessDenied(ToolError):
    pass


class NotFound(ToolError):
    pass


class TooLarge(ToolError):
    pass


class ProviderError(AgentError):
    pass


class TransportError(ProviderError):
    def __init__(self, message: str, *, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (status {self.status_code}): {self.body}"


class ProtocolError(ProviderError):
    pass


class IterationLimitExceeded(AgentError):
    def __init__(self, max_iterations: int):
        super().__init__(f"exceeded maximum iterations ({max_iterations})")
        self.max_iterations = max_iterations


class PersistenceError(AgentError):
    pass
