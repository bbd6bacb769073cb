from __future__ import annotations


class StackError(Exception):
    """Base error. Always names the responsible service and its last known state."""

    def __init__(self, message: str, service: str | None = None, state: str | None = None):
        super().__init__(message)
        self.message = message
        self.service = service
        self.state = state

    def __str__(self) -> str:
        if self.service is None:
            return self.message
        if self.state is None:
            return f"{self.service}: {self.message}"
        return f"{self.service} [{self.state}]: {self.message}"


class ConfigurationError(StackError):
    """Invalid descriptor: missing field, unknown dependency, missing secret."""


class CycleError(ConfigurationError):
    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"dependency cycle: {path}", service=self.cycle[0] if self.cycle else None)


class StartupTimeoutError(StackError):
    """Health check never passed within the startup window."""


class ProbeExecutionError(StackError):
    """The health-check itself could not be executed (not the same as unhealthy)."""


class RestartLimitExceeded(StackError):
    pass


class DependencyNotHealthyError(StackError):
    def __init__(self, service: str, dependency: str, dependency_state: str | None, state: str | None = None):
        self.dependency = dependency
        self.dependency_state = dependency_state
        super().__init__(
            f"dependency '{dependency}' is not healthy ({dependency_state or 'unknown'})",
            service=service,
            state=state,
        )


class InvalidTransition(StackError):
    pass


class BackendError(StackError):
    """Container runtime failure (daemon unreachable, image missing, ...)."""
