"""Error types and user-facing error display for Localnet."""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from rich.console import Console

logger = logging.getLogger(__name__)
console = Console()


class ErrorCategory(Enum):
    """Categories of errors for better user experience."""

    CONFIGURATION = "configuration"
    PERSISTENCE = "persistence"
    REGISTRY = "registry"
    SERVICE = "service"
    VALIDATION = "validation"
    NETWORK = "network"
    SYSTEM = "system"
    USER_INPUT = "user_input"


class LocalnetError(Exception):
    """Base exception for Localnet with enhanced user experience."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        solution: str | None = None,
        details: str | None = None,
        recoverable: bool = True,
        log_level: int = logging.ERROR,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.solution = solution
        self.details = details
        self.recoverable = recoverable
        self.log_level = log_level
        self.original_error = original_error

    def display_to_user(self) -> None:
        """Display error to user with helpful context."""
        category_colors = {
            ErrorCategory.CONFIGURATION: "yellow",
            ErrorCategory.PERSISTENCE: "red",
            ErrorCategory.REGISTRY: "red",
            ErrorCategory.SERVICE: "red",
            ErrorCategory.VALIDATION: "orange3",
            ErrorCategory.NETWORK: "orange3",
            ErrorCategory.SYSTEM: "red",
            ErrorCategory.USER_INPUT: "yellow",
        }
        color = category_colors.get(self.category, "red")
        title = self.category.value.replace("_", " ").title()

        console.print(f"\n[{color} bold]{title} Error[/{color} bold]")
        console.print(f"[{color}]{self.message}[/{color}]")

        if self.details:
            console.print(f"\n[dim]Details:[/dim] {self.details}")

        if self.solution:
            console.print(f"\n[green]Solution:[/green] {self.solution}")

        if self.recoverable:
            console.print(
                "\n[dim]This error may be temporary. You can try again.[/dim]",
            )
        else:
            console.print(
                "\n[dim]This error requires intervention before continuing.[/dim]",
            )

        if self.original_error:
            logger.log(
                self.log_level,
                "%s: %s",
                self.category.value,
                self.message,
                exc_info=self.original_error,
            )
        else:
            logger.log(self.log_level, "%s: %s", self.category.value, self.message)


class ConfigurationError(LocalnetError):
    """Configuration-related errors."""

    def __init__(self, message: str, *, config_path: Path | None = None, **kwargs):
        solution = kwargs.pop("solution", None)
        if not solution and config_path:
            solution = f"Check your configuration file at {config_path}"
        super().__init__(
            message,
            ErrorCategory.CONFIGURATION,
            solution=solution,
            **kwargs,
        )


class PersistenceError(LocalnetError):
    """The node registry could not be read or written."""

    def __init__(self, message: str, *, path: Path | None = None, **kwargs):
        self.path = path
        solution = kwargs.pop(
            "solution",
            f"Check that {path.parent if path else 'the data directory'} is writable",
        )
        super().__init__(
            message,
            ErrorCategory.PERSISTENCE,
            solution=solution,
            recoverable=False,
            **kwargs,
        )


class DuplicateNameError(LocalnetError):
    """A record was inserted under a service name already in the registry."""

    def __init__(self, service_name: str, **kwargs):
        self.service_name = service_name
        super().__init__(
            f"Service name '{service_name}' is already registered",
            ErrorCategory.REGISTRY,
            recoverable=False,
            **kwargs,
        )


class InvalidTransitionError(LocalnetError):
    """A node record was moved to a status its lifecycle does not allow."""

    def __init__(self, service_name: str, current: str, requested: str, **kwargs):
        self.service_name = service_name
        super().__init__(
            f"{service_name}: cannot move from {current} to {requested}",
            ErrorCategory.REGISTRY,
            recoverable=False,
            **kwargs,
        )


class ServiceError(LocalnetError):
    """A service controller operation failed for one service."""

    def __init__(
        self,
        service_name: str,
        stage: str,
        reason: str,
        **kwargs,
    ):
        self.service_name = service_name
        self.stage = stage
        self.reason = reason
        super().__init__(
            f"{service_name}: {stage} failed: {reason}",
            ErrorCategory.SERVICE,
            **kwargs,
        )


class StartError(ServiceError):
    """Install or start of a service was rejected."""

    def __init__(self, service_name: str, reason: str, *, stage: str = "start", **kwargs):
        super().__init__(service_name, stage, reason, **kwargs)


class StopError(ServiceError):
    """Stop or removal of a service failed."""

    def __init__(self, service_name: str, reason: str, *, stage: str = "stop", **kwargs):
        super().__init__(service_name, stage, reason, **kwargs)


class ValidationTimeoutError(LocalnetError):
    """A freshly started node did not answer its health probe in time."""

    def __init__(self, service_name: str, timeout: float, **kwargs):
        self.service_name = service_name
        self.timeout = timeout
        super().__init__(
            f"{service_name} did not become healthy within {timeout:g}s",
            ErrorCategory.VALIDATION,
            **kwargs,
        )


class AlreadyRunningError(LocalnetError):
    """A fresh network was requested while the registry still holds nodes."""

    def __init__(self, node_count: int, **kwargs):
        self.node_count = node_count
        super().__init__(
            f"A local network is already running ({node_count} registered services)",
            ErrorCategory.USER_INPUT,
            solution="Use 'localnet kill' to destroy the network, or 'localnet run --clean'",
            **kwargs,
        )


class NoPeersError(LocalnetError):
    """Join was requested without peers and no local network to join."""

    def __init__(self, **kwargs):
        super().__init__(
            "No peers were supplied and no local network is running",
            ErrorCategory.USER_INPUT,
            solution="Pass --peer or start a network with 'localnet run'",
            **kwargs,
        )


class RegistryLockedError(LocalnetError):
    """Another localnet command currently owns the registry."""

    def __init__(self, lock_path: Path, **kwargs):
        self.lock_path = lock_path
        super().__init__(
            "Another localnet command is operating on the node registry",
            ErrorCategory.REGISTRY,
            details=f"Lock file: {lock_path}",
            solution="Wait for the other command to finish and try again",
            **kwargs,
        )


class NodeNotRunningError(LocalnetError):
    """Raised by status checks when some services are not running."""

    def __init__(self, service_names: list[str], *, report: object | None = None, **kwargs):
        self.service_names = service_names
        self.report = report
        super().__init__(
            f"{len(service_names)} service(s) not running: {', '.join(service_names)}",
            ErrorCategory.SERVICE,
            **kwargs,
        )


@dataclass
class ServiceFailure:
    """One service that did not make it through a batch operation."""

    service_name: str
    stage: str
    cause: str

    def __str__(self) -> str:
        return f"{self.service_name} ({self.stage}): {self.cause}"


class PartialFailureError(LocalnetError):
    """Some services in a batch failed while the rest completed."""

    def __init__(
        self,
        operation: str,
        failures: list[ServiceFailure],
        total: int,
        *,
        skipped: int = 0,
        **kwargs,
    ):
        self.operation = operation
        self.failures = failures
        self.total = total
        self.skipped = skipped
        # Filled in by the orchestrator so callers can still render results
        self.summary: object | None = None
        message = f"{operation}: {len(failures)} of {total} services failed"
        if skipped:
            message += f", {skipped} not started"
        details = "\n".join(f"  - {failure}" for failure in failures)
        super().__init__(
            message,
            ErrorCategory.SERVICE,
            details=details,
            solution=kwargs.pop(
                "solution",
                "Inspect the failed services' logs, then retry the command",
            ),
            **kwargs,
        )

    @property
    def failed_services(self) -> list[str]:
        return [failure.service_name for failure in self.failures]


def handle_error(
    error: Exception,
    *,
    category: ErrorCategory | None = None,
    **kwargs,
) -> None:
    """Convert generic exceptions to LocalnetError and display to user."""
    if isinstance(error, LocalnetError):
        error.display_to_user()
        return

    if category is None:
        if isinstance(error, FileNotFoundError | PermissionError):
            category = ErrorCategory.PERSISTENCE
        elif isinstance(error, ConnectionError | TimeoutError):
            category = ErrorCategory.NETWORK
        else:
            category = ErrorCategory.SYSTEM

    localnet_error = LocalnetError(
        message=str(error) or "An unexpected error occurred",
        category=category,
        original_error=error,
        **kwargs,
    )
    localnet_error.display_to_user()
