"""Kubernetes deploy command.

Fetches the kubeconfig from the master over the remote session, then drives
kubectl against the API server from the build agent: pull secret first, then
every document of every manifest, then a read-back of each applied object.
"""

import logging
import os
import re
from functools import partial

import yaml

from commands.shared import Collaborators
from common import StepResult
from context import DeploymentCommandData, JobContext
from credentials import docker_config_json
from errors import ApplyFailed
from kube import ObjectRef
from manifests import ApplyResult, ManifestUnit
from pipeline import SESSION_KEY, Command
from substitution import substitute

logger = logging.getLogger(__name__)

CLUSTER_KEY = '_cluster'
DEFAULT_NAMESPACE = 'default'
SECRET_NAME_VAR = 'KUBERNETES_SECRET_NAME'

MAX_NAME_LENGTH = 253
DNS_1123_SUBDOMAIN = re.compile(r'[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*\Z')


def sanitize_name(value: str) -> str:
    """Lowercase and strip a string down to a DNS-1123 name."""
    name = re.sub(r'[^a-z0-9-]+', '-', value.lower())
    name = re.sub(r'-{2,}', '-', name)
    name = name[:MAX_NAME_LENGTH].strip('-')
    return name or 'acs-deploy'


def secret_name(data: DeploymentCommandData, job: JobContext) -> str:
    """Pull secret name: the configured one (after substitution) or one derived from the run id.

    Raises:
        ValueError: When the configured name is not a valid DNS-1123 name
    """
    configured = substitute(data.target.secret_name.strip(), job.env)
    if not configured:
        return sanitize_name(f"acs-deploy-{job.run_id}")
    if len(configured) > MAX_NAME_LENGTH or not DNS_1123_SUBDOMAIN.match(configured):
        raise ValueError(
            f"Secret name '{configured}' is not a valid DNS-1123 name "
            f"(lowercase alphanumerics, '-' and '.', at most {MAX_NAME_LENGTH} characters)"
        )
    return configured


def substitution_env(data: DeploymentCommandData, job: JobContext) -> dict[str, str]:
    return {SECRET_NAME_VAR: secret_name(data, job)}


def manifest_documents(unit: ManifestUnit) -> list[dict]:
    """Parse every non-empty YAML document of a manifest, expanding List kinds.

    Raises:
        ApplyFailed: On YAML syntax errors
    """
    try:
        loaded = [doc for doc in yaml.safe_load_all(unit.text) if doc is not None]
    except yaml.YAMLError as e:
        raise ApplyFailed(unit.path, f"invalid YAML: {e}")

    documents = []
    for doc in loaded:
        if isinstance(doc, dict) and doc.get('kind') == 'List':
            documents.extend(item for item in doc.get('items') or [] if item)
        else:
            documents.append(doc)
    return documents


# Step functions

def obtain_cluster_access(data: DeploymentCommandData, job: JobContext, scope: dict,
                          collaborators: Collaborators) -> StepResult:
    session = scope[SESSION_KEY]
    local = job.scratch_dir / 'kubeconfig'
    session.copy_from(data.target.kubeconfig_path, local)
    os.chmod(local, 0o600)

    client = collaborators.cluster_factory(local)
    server = client.server
    if not server:
        return StepResult(success=False, message=f"{data.target.kubeconfig_path} names no API server")

    ok, message = collaborators.check_api(server)
    if not ok:
        return StepResult(success=False, message=message)
    return StepResult(success=True, message=message, context_updates={CLUSTER_KEY: client, 'api_server': server})


def inject_pull_secret(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    credentials = scope.get('registry_credentials') or []
    if not credentials:
        return StepResult(success=True, message="No registry credentials, skipping pull secret")

    name = secret_name(data, job)
    namespace = data.target.secret_namespace
    outcome = scope[CLUSTER_KEY].ensure_pull_secret(name, namespace, docker_config_json(credentials))
    return StepResult(
        success=True,
        message=f"Pull secret {name} {outcome} in namespace {namespace}",
        context_updates={'pull_secret': name},
    )


def apply_manifests(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    client = scope[CLUSTER_KEY]
    refs: list[ObjectRef] = []
    results: list[ApplyResult] = []

    for unit in scope['manifests']:
        documents = manifest_documents(unit)
        if not documents:
            logger.warning(f"{unit.path} contains no documents")
            continue
        for doc in documents:
            ref, outcome = client.apply(doc, DEFAULT_NAMESPACE, source=unit.path)
            refs.append(ref)
            results.append(ApplyResult(path=unit.path, success=True, message=f"{ref} {outcome}"))

    return StepResult(
        success=True,
        message=f"Applied {len(refs)} object(s)",
        context_updates={
            '_applied_refs': refs,
            'apply_results': results,
            'applied_objects': [str(ref) for ref in refs],
        },
    )


def verify_objects(data: DeploymentCommandData, job: JobContext, scope: dict) -> StepResult:
    client = scope[CLUSTER_KEY]
    refs = scope.get('_applied_refs') or []
    missing = [str(ref) for ref in refs if not client.exists(ref)]
    if missing:
        return StepResult(success=False, message=f"Not found after apply: {', '.join(missing)}")
    return StepResult(success=True, message=f"{len(refs)} object(s) present")


def deploy_command(collaborators: Collaborators) -> Command:
    return Command(
        name='kubernetes-deploy',
        description='Deploy to Kubernetes',
        steps=[
            ('obtain-access', partial(obtain_cluster_access, collaborators=collaborators),
             'Fetch kubeconfig from the master and check the API server answers'),
            ('inject-auth', inject_pull_secret, 'Create or replace the registry pull secret'),
            ('apply', apply_manifests, 'Create or replace every manifest document'),
            ('verify', verify_objects, 'Read back applied objects'),
        ],
        session=collaborators.connect,
    )
