"""Job context and deployment command data.

JobContext carries what the build pipeline supplies for one deployment run:
workspace, environment, logger and run identity. DeploymentCommandData is the
frozen description of what to deploy where; its ``target`` field is a tagged
variant holding the orchestrator-specific settings.
"""

import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, ClassVar, Mapping, Optional, Union

from common import SecretRedactor
from credentials import RegistryEndpoint
from errors import UnsupportedOrchestrator

if TYPE_CHECKING:
    from pipeline import CommandRecord

logger = logging.getLogger(__name__)

SCRATCH_DIR_NAME = '.acs-deploy'


class OrchestratorKind(Enum):
    """Container orchestrators a cluster can run."""
    KUBERNETES = 'kubernetes'
    DCOS = 'dcos'
    SWARM = 'swarm'

    @classmethod
    def parse(cls, value: str) -> 'OrchestratorKind':
        """Parse a kind name case-insensitively."""
        normalized = (value or '').strip().lower()
        for kind in cls:
            if kind.value == normalized:
                return kind
        raise UnsupportedOrchestrator(value, [k.value for k in cls])


@dataclass(frozen=True)
class KubernetesTarget:
    """Kubernetes settings: pull secret placement and kubeconfig location."""
    secret_name: str = ''  # blank derives a name from the run id
    secret_namespace: str = 'default'
    kubeconfig_path: str = '.kube/config'

    kind: ClassVar[OrchestratorKind] = OrchestratorKind.KUBERNETES
    default_ssh_port: ClassVar[int] = 22


@dataclass(frozen=True)
class DcosTarget:
    """DC/OS settings: docker credentials archive and Marathon endpoint."""
    auth_archive_path: str = 'docker.tar.gz'
    marathon_url: str = 'http://localhost/marathon'

    kind: ClassVar[OrchestratorKind] = OrchestratorKind.DCOS
    default_ssh_port: ClassVar[int] = 2200


@dataclass(frozen=True)
class SwarmTarget:
    """Swarm settings: docker config location, daemon address and compose project."""
    auth_file_path: str = '.docker/config.json'
    docker_host: str = ':2375'
    project: str = ''  # blank uses the default project name

    kind: ClassVar[OrchestratorKind] = OrchestratorKind.SWARM
    default_ssh_port: ClassVar[int] = 2200


Target = Union[KubernetesTarget, DcosTarget, SwarmTarget]


@dataclass(frozen=True)
class DeploymentCommandData:
    """Everything the command set needs to know about one deployment.

    Built once before the pipeline runs and never modified afterwards;
    command results travel in CommandRecord instead.
    """
    target: Target
    master_endpoint: str
    admin_username: str = 'azureuser'
    ssh_private_key: Optional[str] = field(default=None, repr=False)
    ssh_passphrase: Optional[str] = field(default=None, repr=False)
    ssh_port: Optional[int] = None
    config_file_paths: str = ''
    enable_config_substitution: bool = False
    registry_endpoints: tuple[RegistryEndpoint, ...] = ()

    @property
    def kind(self) -> OrchestratorKind:
        return self.target.kind

    @property
    def port(self) -> int:
        return self.ssh_port or self.target.default_ssh_port


def _new_run_id() -> str:
    return f"{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


class JobContext:
    """Per-run context shared read-only by every command.

    Use as a context manager: entering attaches the secret redactor to the
    root log handlers, exiting detaches it and removes the scratch directory.
    """

    def __init__(
        self,
        workspace: Path,
        env: Optional[Mapping[str, str]] = None,
        run_id: Optional[str] = None,
        principal: Optional[str] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.workspace = Path(workspace).resolve()
        self.env: Mapping[str, str] = MappingProxyType(dict(env or {}))
        self.run_id = run_id or _new_run_id()
        self.principal = principal
        self.logger = log or logging.getLogger('acs_driver.job')
        self.redactor = SecretRedactor()
        self._scratch_dir: Optional[Path] = None
        self._last_result: Optional['CommandRecord'] = None
        self._handlers: list[logging.Handler] = []

    def __repr__(self) -> str:
        return f'JobContext(run_id={self.run_id!r}, workspace={str(self.workspace)!r})'

    @property
    def scratch_dir(self) -> Path:
        """Run-scoped directory under the workspace, created on first use."""
        if self._scratch_dir is None:
            path = self.workspace / SCRATCH_DIR_NAME / self.run_id
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, 0o700)
            self._scratch_dir = path
        return self._scratch_dir

    @property
    def last_result(self) -> Optional['CommandRecord']:
        return self._last_result

    def record_result(self, record: 'CommandRecord') -> None:
        """Store the terminal record of the command that just finished."""
        self._last_result = record

    def register_secret(self, *values: Optional[str]) -> None:
        """Mask values in all log output for the rest of the run."""
        self.redactor.register(*values)

    def __enter__(self) -> 'JobContext':
        self._handlers = list(logging.getLogger().handlers)
        for handler in self._handlers:
            handler.addFilter(self.redactor)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Detach the redactor and remove the scratch directory."""
        for handler in self._handlers:
            handler.removeFilter(self.redactor)
        self._handlers = []
        if self._scratch_dir is not None:
            shutil.rmtree(self._scratch_dir, ignore_errors=True)
            parent = self._scratch_dir.parent
            self._scratch_dir = None
            try:
                parent.rmdir()  # only succeeds when no other run left files
            except OSError:
                pass
