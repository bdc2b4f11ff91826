"""Swarm deploy command.

Compose files are uploaded to the master and brought up with
``docker-compose up -d`` against the Swarm endpoint, which creates missing
services and recreates changed ones.
"""

import logging
import re
import shlex
from functools import partial

from commands.shared import Collaborators, ensure_remote_parent, remote_path, remote_work_dir, staged_session
from common import StepResult
from context import DeploymentCommandData, JobContext
from credentials import write_docker_config
from errors import ApplyFailed, RemoteExecutionFailed
from manifests import ApplyResult
from pipeline import SESSION_KEY, Command

logger = logging.getLogger(__name__)

DEFAULT_PROJECT = 'acsdeploy'


def project_name(data: DeploymentCommandData) -> str:
    """Compose project name from the Swarm settings.

    The name must not depend on the compose file name: redeploying a
    renamed or edited file has to update the same project's services.
    """
    name = re.sub(r'[^a-z0-9_-]', '', data.target.project.lower()).lstrip('-_')
    return name or DEFAULT_PROJECT


def compose(data: DeploymentCommandData, compose_file: str, project: str, *args: str) -> str:
    """docker-compose command line pointed at the Swarm endpoint."""
    parts = ['docker-compose', '-f', compose_file, '-p', project] + list(args)
    return f"DOCKER_HOST={shlex.quote(data.target.docker_host)} " + ' '.join(shlex.quote(p) for p in parts)


# Step functions

def check_docker(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    session = scope[SESSION_KEY]
    session.execute(f"DOCKER_HOST={shlex.quote(data.target.docker_host)} docker info > /dev/null")
    return StepResult(success=True, message=f"Docker endpoint {data.target.docker_host} answers")


def upload_docker_config(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    credentials = scope.get('registry_credentials') or []
    if not credentials:
        return StepResult(success=True, message="No registry credentials, skipping docker config")

    session = scope[SESSION_KEY]
    config = write_docker_config(credentials, job.scratch_dir / 'config.json')
    dest = data.target.auth_file_path
    ensure_remote_parent(session, dest)
    session.copy_to(config, dest)
    session.execute(f"chmod 600 {shlex.quote(dest)}")
    return StepResult(success=True, message=f"Uploaded registry credentials to {dest}",
                      context_updates={'docker_config': dest})


def compose_up(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    session = scope[SESSION_KEY]
    work_dir = remote_work_dir(job)
    project = project_name(data)
    uploads: list[tuple[str, str]] = []
    results: list[ApplyResult] = []

    for index, unit in enumerate(scope['manifests']):
        upload = remote_path(work_dir, index, unit.name)
        session.copy_to(unit.staged_path, upload)
        try:
            session.execute(compose(data, upload, project, 'up', '-d'))
        except RemoteExecutionFailed as e:
            raise ApplyFailed(unit.path, e.output.strip() or f"docker-compose exited with code {e.exit_code}")

        logger.info(f"Project {project} up from {unit.path}")
        uploads.append((unit.path, upload))
        results.append(ApplyResult(path=unit.path, success=True, message=f"project {project} up"))

    return StepResult(
        success=True,
        message=f"Brought up {len(uploads)} compose file(s) in project {project}",
        context_updates={
            '_uploads': uploads,
            'compose_project': project,
            'apply_results': results,
            'applied_objects': [path for path, _ in uploads],
        },
    )


def verify_projects(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    session = scope[SESSION_KEY]
    project = project_name(data)
    uploads = scope.get('_uploads') or []
    empty = []
    for path, upload in uploads:
        _, out = session.execute(compose(data, upload, project, 'ps', '-q'))
        if not out.strip():
            empty.append(path)
    if empty:
        return StepResult(success=False, message=f"No containers running in project {project} for: {', '.join(empty)}")
    return StepResult(success=True, message=f"Project {project} running ({len(uploads)} compose file(s))")


def deploy_command(collaborators: Collaborators) -> Command:
    return Command(
        name='swarm-deploy',
        description='Deploy to Docker Swarm',
        steps=[
            ('obtain-access', check_docker, 'Check the Swarm docker endpoint answers'),
            ('inject-auth', upload_docker_config, 'Upload docker config.json registry credentials'),
            ('apply', compose_up, 'docker-compose up -d every compose file'),
            ('verify', verify_projects, 'Check every compose file has running containers'),
        ],
        session=partial(staged_session, collaborators.connect),
    )
