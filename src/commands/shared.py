"""Commands and helpers shared by every orchestrator kind."""

import logging
import posixpath
import shlex
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable, Iterator, Mapping, Optional

from common import StepResult
from context import DeploymentCommandData, JobContext
from credentials import CredentialResolver, CredentialStore
from errors import RemoteExecutionFailed
from kube import ClusterClient
from manifests import resolve_manifests
from pipeline import Command, SessionFactory
from readiness import validate_api_server
from remote import RemoteSession, RemoteShellClient, RetryPolicy

logger = logging.getLogger(__name__)

ExtraEnv = Callable[[DeploymentCommandData, JobContext], Mapping[str, str]]


def open_session(data: DeploymentCommandData, job: JobContext, retry: Optional[RetryPolicy] = None):
    """Session factory used by deploy commands: a scoped SSH session to the master."""
    job.register_secret(data.ssh_passphrase, data.ssh_private_key)
    client = RemoteShellClient(
        host=data.master_endpoint,
        username=data.admin_username,
        private_key=data.ssh_private_key,
        passphrase=data.ssh_passphrase,
        port=data.port,
        retry=retry,
    )
    return client.connect()


@dataclass(frozen=True)
class Collaborators:
    """External collaborators the command set is built with."""
    store: CredentialStore
    connect: SessionFactory = open_session
    cluster_factory: Callable[[Path], ClusterClient] = field(default=ClusterClient.from_kubeconfig)
    check_api: Callable[[str], tuple[bool, str]] = field(default=validate_api_server)


def remote_work_dir(job: JobContext) -> str:
    """Per-run directory on the master for uploaded files."""
    return f"/tmp/acs-deploy-{job.run_id}"


def remote_path(directory: str, index: int, filename: str) -> str:
    """Upload path for the index-th manifest; the prefix keeps same-named files apart."""
    return posixpath.join(directory, f"{index:02d}-{filename}")


@contextmanager
def staged_session(connect: SessionFactory, data: DeploymentCommandData, job: JobContext) -> Iterator[RemoteSession]:
    """Open a session with a private per-run working directory on the master.

    The directory and everything uploaded into it is removed when the
    session closes, whether the command succeeded or not.
    """
    with connect(data, job) as session:
        work_dir = shlex.quote(remote_work_dir(job))
        session.execute(f"mkdir -p {work_dir} && chmod 700 {work_dir}")
        try:
            yield session
        finally:
            try:
                session.execute(f"rm -rf {work_dir}", check=False)
            except RemoteExecutionFailed as e:
                logger.warning(f"Could not remove {remote_work_dir(job)} on {session.target}: {e}")


def ensure_remote_parent(session: RemoteSession, path: str) -> None:
    """Create the parent directory of a remote path; a new one is owner-only."""
    parent = posixpath.dirname(path)
    if parent:
        session.execute(f"mkdir -p -m 700 {shlex.quote(parent)}")


# Step functions

def resolve_registry_credentials(
    data: DeploymentCommandData,
    job: JobContext,
    scope: dict,
    resolver: CredentialResolver,
) -> StepResult:
    if not data.registry_endpoints:
        return StepResult(
            success=True,
            message="No private registry declared; images pull from the public registry",
            context_updates={'registry_credentials': []},
        )
    credentials = resolver.resolve(data.registry_endpoints, principal=job.principal)
    for credential in credentials:
        job.register_secret(credential.token)
    return StepResult(
        success=True,
        message=f"Resolved {len(credentials)} registry credential(s)",
        context_updates={
            'registry_credentials': credentials,
            'registries': [c.url for c in credentials],
        },
    )


def prepare_manifests(
    data: DeploymentCommandData,
    job: JobContext,
    scope: dict,
    extra_env: Optional[ExtraEnv] = None,
) -> StepResult:
    env = None
    if data.enable_config_substitution:
        env = dict(job.env)
        if extra_env is not None:
            env.update(extra_env(data, job))
    units = resolve_manifests(job.workspace, data.config_file_paths, env, job.scratch_dir)
    substituted = sum(1 for u in units if u.substituted)
    message = f"{len(units)} manifest file(s)"
    if data.enable_config_substitution:
        message += f", {substituted} substituted"
    return StepResult(
        success=True,
        message=message,
        context_updates={
            'manifests': units,
            'manifest_paths': [u.path for u in units],
        },
    )


# Command builders

def resolve_credentials_command(store: CredentialStore) -> Command:
    resolver = CredentialResolver(store)
    return Command(
        name='resolve-credentials',
        description='Resolve private registry credentials',
        steps=[
            ('resolve', partial(resolve_registry_credentials, resolver=resolver),
             'Look up declared registry credentials'),
        ],
    )


def prepare_manifests_command(extra_env: Optional[ExtraEnv] = None) -> Command:
    return Command(
        name='prepare-manifests',
        description='Resolve and substitute configuration files',
        steps=[
            ('resolve', partial(prepare_manifests, extra_env=extra_env),
             'Glob configuration files and substitute variables'),
        ],
    )
