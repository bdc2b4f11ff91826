"""Common utilities and types for the deployment pipeline."""

import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

MASK = '********'


class CommandState(Enum):
    """Lifecycle state of a deployment command."""
    UNKNOWN = 'Unknown'
    RUNNING = 'Running'
    SUCCESS = 'Success'
    HAS_ERROR = 'HasError'
    CANCELLED = 'Cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in (CommandState.SUCCESS, CommandState.HAS_ERROR, CommandState.CANCELLED)


@dataclass
class StepResult:
    """Result returned by a command step."""
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)
    error: Optional[Exception] = None


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: Optional[int] = None,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    No timeout by default: remote transfers block until the transport
    itself reports completion or failure.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            stdin=subprocess.DEVNULL,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout or '', result.stderr or ''
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


class SecretRedactor(logging.Filter):
    """Logging filter that masks registered secret values.

    Attached to the root handlers for the duration of a job so that
    tokens, passwords and key material never reach log output.
    """

    def __init__(self):
        super().__init__()
        self._secrets: set[str] = set()
        self._formatter = logging.Formatter()

    def register(self, *values: Optional[str]) -> None:
        for value in values:
            # Very short values would mask unrelated text
            if value and len(value) >= 4:
                self._secrets.add(value)

    def redact(self, text: str) -> str:
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        # Formatters reuse exc_text when set, so the masked traceback is what gets written
        if record.exc_info and not record.exc_text:
            record.exc_text = self._formatter.formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = self.redact(record.exc_text)
        if record.stack_info:
            record.stack_info = self.redact(record.stack_info)
        return True
