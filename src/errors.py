"""Error taxonomy for the deployment pipeline.

Every error carries a short code so build logs can be grepped and so the
run report can group failures:

- E1xx: configuration substitution
- E2xx: registry credentials
- E3xx: remote shell transport
- E4xx: manifest resolution and apply
- E5xx: orchestrator selection
- E6xx: command state machine
"""

from typing import Optional


class DeployError(Exception):
    """Base exception for deployment errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class SubstitutionError(DeployError):
    """Malformed, unsafe or (in strict mode) unresolved placeholder."""

    def __init__(self, placeholder: str, offset: int, line: int, column: int, reason: str):
        self.placeholder = placeholder
        self.offset = offset
        self.line = line
        self.column = column
        self.reason = reason
        super().__init__(
            "E101",
            f"{reason}: {placeholder!r} at line {line}, column {column}"
        )


class CredentialNotFound(DeployError):
    """Declared registry credential cannot be resolved."""

    def __init__(self, identifier: str, reason: str = 'not found'):
        self.identifier = identifier
        super().__init__("E201", f"Registry credential '{identifier}' {reason}")


class RemoteUnavailable(DeployError):
    """Connection retry budget exhausted."""

    def __init__(self, target: str, attempts: int, cause: str):
        self.target = target
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            "E301",
            f"Cannot connect to {target} after {attempts} attempts: {cause}"
        )


class RemoteExecutionFailed(DeployError):
    """Non-zero exit or transport error during execute/copy."""

    def __init__(self, operation: str, exit_code: int, output: str = ''):
        self.operation = operation
        self.exit_code = exit_code
        self.output = output
        detail = f": {output.strip()}" if output.strip() else ''
        super().__init__("E302", f"{operation} failed with exit code {exit_code}{detail}")


class ApplyFailed(DeployError):
    """Orchestrator rejected a manifest."""

    def __init__(self, manifest: str, reason: str):
        self.manifest = manifest
        self.reason = reason
        super().__init__("E401", f"Failed to apply {manifest}: {reason}")


class ManifestsNotFound(DeployError):
    """Configuration file globs matched nothing."""

    def __init__(self, patterns: str, workspace: Optional[str] = None):
        self.patterns = patterns
        where = f" under {workspace}" if workspace else ''
        super().__init__("E402", f"No configuration files found matching '{patterns}'{where}")


class UnsupportedOrchestrator(DeployError):
    """Unknown orchestrator kind requested."""

    def __init__(self, kind: str, available: Optional[list[str]] = None):
        self.kind = kind
        hint = f". Available: {', '.join(available)}" if available else ''
        super().__init__("E501", f"Unsupported orchestrator: {kind}{hint}")


class InvalidTransition(DeployError):
    """Command state machine violation."""

    def __init__(self, command: str, current: str, requested: str):
        super().__init__(
            "E601",
            f"Command '{command}' cannot move from {current} to {requested}"
        )
