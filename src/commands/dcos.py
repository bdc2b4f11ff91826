"""DC/OS deploy command.

App and group definitions are uploaded to the master and PUT to Marathon
with ``force=true``, which creates the app or replaces its definition and
overrides any deployment already in progress.
"""

import json
import logging
import posixpath
import shlex
from functools import partial
from urllib.parse import quote

from commands.shared import Collaborators, ensure_remote_parent, remote_path, remote_work_dir, staged_session
from common import StepResult
from context import DeploymentCommandData, JobContext
from credentials import write_docker_config_archive
from errors import ApplyFailed
from manifests import ApplyResult, ManifestUnit
from pipeline import SESSION_KEY, Command

logger = logging.getLogger(__name__)

CREDENTIALS_PATH_VAR = 'DCOS_DOCKER_CREDENTIALS_PATH'


def credentials_archive_path(data: DeploymentCommandData) -> str:
    """Absolute path of the docker credentials archive on the master."""
    path = data.target.auth_archive_path
    if posixpath.isabs(path):
        return path
    return posixpath.join('/home', data.admin_username, path)


def substitution_env(data: DeploymentCommandData, job: JobContext) -> dict[str, str]:
    return {CREDENTIALS_PATH_VAR: credentials_archive_path(data)}


def marathon_endpoint(data: DeploymentCommandData, definition: dict, source: str) -> tuple[str, str]:
    """Return (collection, id) for an app or group definition.

    Raises:
        ApplyFailed: When the definition has no id
    """
    app_id = str(definition.get('id') or '').strip()
    if not app_id:
        raise ApplyFailed(source, "definition has no id")
    if not app_id.startswith('/'):
        app_id = '/' + app_id
    collection = 'groups' if ('apps' in definition or 'groups' in definition) else 'apps'
    return collection, app_id


def marathon_url(data: DeploymentCommandData, collection: str, app_id: str) -> str:
    return f"{data.target.marathon_url.rstrip('/')}/v2/{collection}{quote(app_id)}"


def load_definition(unit: ManifestUnit) -> dict:
    try:
        definition = json.loads(unit.text)
    except ValueError as e:
        raise ApplyFailed(unit.path, f"invalid JSON: {e}")
    if not isinstance(definition, dict):
        raise ApplyFailed(unit.path, "definition is not a JSON object")
    return definition


# Step functions

def check_marathon(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    session = scope[SESSION_KEY]
    url = f"{data.target.marathon_url.rstrip('/')}/v2/info"
    session.execute(f"curl -sSf -o /dev/null {shlex.quote(url)}")
    return StepResult(success=True, message=f"Marathon reachable at {data.target.marathon_url}")


def upload_credentials_archive(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    credentials = scope.get('registry_credentials') or []
    if not credentials:
        return StepResult(success=True, message="No registry credentials, skipping docker.tar.gz")

    session = scope[SESSION_KEY]
    archive = write_docker_config_archive(credentials, job.scratch_dir / 'docker.tar.gz')
    dest = credentials_archive_path(data)
    ensure_remote_parent(session, dest)
    session.copy_to(archive, dest)
    session.execute(f"chmod 600 {shlex.quote(dest)}")
    return StepResult(success=True, message=f"Uploaded registry credentials to {dest}",
                      context_updates={'credentials_archive': dest})


def put_definitions(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    session = scope[SESSION_KEY]
    work_dir = remote_work_dir(job)
    deployed: list[tuple[str, str]] = []
    results: list[ApplyResult] = []

    for index, unit in enumerate(scope['manifests']):
        collection, app_id = marathon_endpoint(data, load_definition(unit), unit.path)
        upload = remote_path(work_dir, index, unit.name)
        session.copy_to(unit.staged_path, upload)

        url = marathon_url(data, collection, app_id) + '?force=true'
        _, out = session.execute(
            "curl -sS -X PUT -H 'Content-Type: application/json' "
            f"--data-binary @{shlex.quote(upload)} -w '\\n%{{http_code}}' {shlex.quote(url)}"
        )
        body, _, status = out.rstrip('\n').rpartition('\n')
        if not status.isdigit() or not 200 <= int(status) < 300:
            raise ApplyFailed(unit.path, f"Marathon returned HTTP {status}: {body.strip()[:200]}")

        logger.info(f"Deployed {collection[:-1]} {app_id} from {unit.path}")
        deployed.append((collection, app_id))
        results.append(ApplyResult(path=unit.path, success=True, message=f"{collection[:-1]} {app_id} deployed"))

    return StepResult(
        success=True,
        message=f"Deployed {len(deployed)} definition(s)",
        context_updates={
            '_deployed': deployed,
            'apply_results': results,
            'applied_objects': [app_id for _, app_id in deployed],
        },
    )


def verify_definitions(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    session = scope[SESSION_KEY]
    missing = []
    deployed = scope.get('_deployed') or []
    for collection, app_id in deployed:
        url = marathon_url(data, collection, app_id)
        rc, _ = session.execute(f"curl -sSf -o /dev/null {shlex.quote(url)}", check=False)
        if rc != 0:
            missing.append(app_id)
    if missing:
        return StepResult(success=False, message=f"Not found in Marathon after deploy: {', '.join(missing)}")
    return StepResult(success=True, message=f"{len(deployed)} definition(s) present")


def deploy_command(collaborators: Collaborators) -> Command:
    return Command(
        name='dcos-deploy',
        description='Deploy to DC/OS Marathon',
        steps=[
            ('obtain-access', check_marathon, 'Check Marathon answers on the master'),
            ('inject-auth', upload_credentials_archive, 'Upload docker.tar.gz registry credentials'),
            ('apply', put_definitions, 'PUT app and group definitions with force=true'),
            ('verify', verify_definitions, 'Read back deployed definitions'),
        ],
        session=partial(staged_session, collaborators.connect),
    )
