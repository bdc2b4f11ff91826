"""Remote shell sessions to a cluster master node.

Sessions are OpenSSH control-master connections: connecting authenticates
once and the master keeps running in the background, then every execute
and file transfer is multiplexed over its control socket. Closing the
session stops the master and removes the private working directory that
holds the socket and any key material.

Only connecting is retried. A master that was just provisioned or restarted
refuses connections for a while, so connect() keeps trying under a
RetryPolicy. Execute and copy failures are deployment failures and are
raised immediately.
"""

import logging
import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

from common import run_command
from errors import RemoteExecutionFailed, RemoteUnavailable

logger = logging.getLogger(__name__)

SSH_OPTS = [
    '-o', 'StrictHostKeyChecking=no',
    '-o', 'UserKnownHostsFile=/dev/null',
    '-o', 'LogLevel=ERROR',
]

# ssh exits with 255 when the transport itself failed
SSH_TRANSPORT_ERROR = 255

PASSPHRASE_ENV = 'ACS_DRIVER_SSH_PASSPHRASE'
_ASKPASS_SCRIPT = f'#!/bin/sh\nprintf \'%s\\n\' "${PASSPHRASE_ENV}"\n'


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded, fixed-delay retry policy for connection attempts."""
    max_attempts: int = 20
    delay: float = 5.0

    def should_retry(self, attempt: int) -> bool:
        """Return True if another attempt may follow the given 1-based attempt."""
        return attempt < self.max_attempts


class RemoteSession:
    """An authenticated session multiplexed over an SSH control socket."""

    def __init__(self, target: str, port: int, options: list[str], env: Optional[dict] = None):
        self.target = target
        self.port = port
        self._options = options
        self._env = env
        self.closed = False

    def execute(self, command: str, check: bool = True) -> tuple[int, str]:
        """Run a shell command on the master.

        Returns:
            (exit_code, stdout)

        Raises:
            RemoteExecutionFailed: On transport errors, or on non-zero exit
                when check is True
        """
        self._ensure_open()
        logger.debug(f"Executing on {self.target}: {command}")
        cmd = ['ssh'] + self._options + ['-p', str(self.port), self.target, command]
        rc, out, err = run_command(cmd, env=self._env)
        if rc < 0 or rc == SSH_TRANSPORT_ERROR or (check and rc != 0):
            raise RemoteExecutionFailed(f"Remote command '{_brief(command)}'", rc, err or out)
        return rc, out

    def copy_to(self, local_path: Path, remote_path: str) -> None:
        """Upload a local file to the master."""
        self._ensure_open()
        logger.debug(f"Uploading {local_path} to {self.target}:{remote_path}")
        cmd = ['scp'] + self._options + ['-P', str(self.port), str(local_path), f'{self.target}:{remote_path}']
        rc, out, err = run_command(cmd, env=self._env)
        if rc != 0:
            raise RemoteExecutionFailed(f"Upload of {Path(local_path).name}", rc, err or out)

    def copy_from(self, remote_path: str, local_path: Path) -> None:
        """Download a file from the master."""
        self._ensure_open()
        logger.debug(f"Downloading {self.target}:{remote_path} to {local_path}")
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        cmd = ['scp'] + self._options + ['-P', str(self.port), f'{self.target}:{remote_path}', str(local_path)]
        rc, out, err = run_command(cmd, env=self._env)
        if rc != 0:
            raise RemoteExecutionFailed(f"Download of {remote_path}", rc, err or out)

    def close(self) -> None:
        """Stop the control master. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        cmd = ['ssh'] + self._options + ['-p', str(self.port), '-O', 'exit', self.target]
        rc, _, err = run_command(cmd, env=self._env, timeout=30)
        if rc != 0:
            logger.debug(f"Control master for {self.target} already gone: {err.strip()}")

    def _ensure_open(self) -> None:
        if self.closed:
            raise RemoteExecutionFailed(f"Session to {self.target}", -1, 'session is closed')


class RemoteShellClient:
    """Opens remote shell sessions with bounded connection retries."""

    def __init__(
        self,
        host: str,
        username: str,
        private_key: Optional[str] = None,
        passphrase: Optional[str] = None,
        port: int = 22,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        connect_timeout: int = 30,
    ):
        self.host = host
        self.username = username
        self.port = port
        self.retry = retry or RetryPolicy()
        self.connect_timeout = connect_timeout
        self._private_key = private_key
        self._passphrase = passphrase
        self._sleep = sleep

    @property
    def target(self) -> str:
        return f'{self.username}@{self.host}'

    def __repr__(self) -> str:
        return f'RemoteShellClient({self.target}:{self.port})'

    @contextmanager
    def connect(self) -> Iterator[RemoteSession]:
        """Open a session; it is closed when the with-block exits.

        Raises:
            RemoteUnavailable: When every attempt allowed by the retry
                policy failed
        """
        workdir = Path(tempfile.mkdtemp(prefix='acs-ssh-'))
        try:
            options, env = self._prepare(workdir)
            self._open_master(options, env)
            session = RemoteSession(self.target, self.port, options, env)
            try:
                yield session
            finally:
                session.close()
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _prepare(self, workdir: Path) -> tuple[list[str], Optional[dict]]:
        """Write key material and build ssh options for this session."""
        os.chmod(workdir, 0o700)
        options = list(SSH_OPTS) + [
            '-o', f'ControlPath={workdir / "control.sock"}',
            '-o', f'ConnectTimeout={self.connect_timeout}',
        ]
        env = None

        if self._private_key:
            key_file = workdir / 'id_key'
            fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                key = self._private_key
                f.write(key if key.endswith('\n') else key + '\n')
            options += ['-i', str(key_file), '-o', 'IdentitiesOnly=yes']

        if self._passphrase:
            # The passphrase reaches ssh through the environment; the helper
            # script on disk only echoes the variable
            askpass = workdir / 'askpass.sh'
            askpass.write_text(_ASKPASS_SCRIPT, encoding='utf-8')
            os.chmod(askpass, 0o700)
            env = dict(os.environ)
            env.update({
                'SSH_ASKPASS': str(askpass),
                'SSH_ASKPASS_REQUIRE': 'force',
                'DISPLAY': env.get('DISPLAY', 'none'),
                PASSPHRASE_ENV: self._passphrase,
            })
        else:
            options += ['-o', 'BatchMode=yes']

        return options, env

    def _open_master(self, options: list[str], env: Optional[dict]) -> int:
        """Start the control master, retrying per the policy.

        Returns:
            Number of attempts it took
        """
        cmd = ['ssh'] + options + [
            '-o', 'ControlMaster=auto',
            '-o', 'ControlPersist=yes',
            '-p', str(self.port),
            self.target,
            'echo ready',
        ]
        attempt = 0
        while True:
            attempt += 1
            logger.info(f"Connecting to {self.target}:{self.port} (attempt {attempt}/{self.retry.max_attempts})")
            rc, out, err = run_command(cmd, env=env, timeout=self.connect_timeout + 30)
            if rc == 0 and 'ready' in out:
                logger.info(f"Connected to {self.target}:{self.port} after {attempt} attempt(s)")
                return attempt

            cause = err.strip() or out.strip() or f'exit code {rc}'
            logger.warning(f"Connection attempt {attempt}/{self.retry.max_attempts} "
                           f"to {self.target}:{self.port} failed: {cause}")
            if not self.retry.should_retry(attempt):
                raise RemoteUnavailable(f'{self.target}:{self.port}', attempt, cause)
            self._sleep(self.retry.delay)


def _brief(command: str, limit: int = 80) -> str:
    """Shorten a command for error messages."""
    first = command.strip().split('\n', 1)[0]
    return first if len(first) <= limit else first[:limit] + '...'
