class AgentCoreError(Exception):
    """Base class for errors raised by the orchestration core."""


class NotFound(AgentCoreError):
    pass


class ValidationError(AgentCoreError, ValueError):
    pass


class ToolExecutionError(AgentCoreError):
    pass


class ProviderError(AgentCoreError):
    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class SandboxPermissionError(AgentCoreError, PermissionError):
    pass


class SandboxTimeout(AgentCoreError, TimeoutError):
    pass
