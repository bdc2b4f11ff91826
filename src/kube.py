"""Kubernetes cluster client driven through kubectl.

The kubeconfig is fetched from the master into the run's scratch directory
and every call passes it explicitly with ``--kubeconfig``, so the build
agent's own kubectl configuration is never read or changed.

Redeploys use full replace. The stored object's ``resourceVersion`` is
carried into the new body (optimistic concurrency) and, for Services, the
immutable ``spec.clusterIP``/``spec.clusterIPs``. Every applied object is
annotated with a hash of the submitted manifest so an unchanged redeploy
is a no-op.
"""

import copy
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import yaml

from common import run_command
from errors import ApplyFailed

logger = logging.getLogger(__name__)

APPLIED_HASH_ANNOTATION = 'acs-driver/applied-hash'

CREATED = 'created'
REPLACED = 'replaced'
UNCHANGED = 'unchanged'

# Fields the API server assigns once and rejects changes to on replace
_SERVICE_IMMUTABLE_FIELDS = ('clusterIP', 'clusterIPs')


@dataclass(frozen=True)
class ObjectRef:
    """Identity of an object in the cluster."""
    api_version: str
    kind: str
    name: str
    namespace: Optional[str] = None

    @property
    def resource(self) -> str:
        """kubectl resource argument, qualified by version and group.

        kubectl reads ``a.b`` as resource.group, so core-group objects keep
        a trailing dot (``service.v1.``) to name the version with an empty group.
        """
        group, _, version = self.api_version.rpartition('/')
        return f"{self.kind.lower()}.{version}.{group}"

    def __str__(self) -> str:
        where = f" in {self.namespace}" if self.namespace else ''
        return f"{self.kind}/{self.name}{where}"


def manifest_digest(doc: dict) -> str:
    """Stable hash of a manifest document as submitted."""
    canonical = json.dumps(doc, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def object_ref(doc: dict, default_namespace: str, source: str = '') -> ObjectRef:
    """Build the ref for a manifest document, validating required fields.

    Raises:
        ApplyFailed: When apiVersion, kind or metadata.name is missing
    """
    if not isinstance(doc, dict):
        raise ApplyFailed(source or 'manifest', 'document is not a mapping')
    metadata = doc.get('metadata') or {}
    missing = [f for f, v in (('apiVersion', doc.get('apiVersion')),
                              ('kind', doc.get('kind')),
                              ('metadata.name', metadata.get('name'))) if not v]
    if missing:
        raise ApplyFailed(source or 'manifest', f"document is missing {', '.join(missing)}")
    return ObjectRef(
        api_version=str(doc['apiVersion']),
        kind=str(doc['kind']),
        name=str(metadata['name']),
        namespace=str(metadata.get('namespace') or default_namespace),
    )


def kubeconfig_server(path: Path) -> str:
    """Return the API server URL of the kubeconfig's current context."""
    with open(path, encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}
    contexts = {c.get('name'): c.get('context', {}) for c in config.get('contexts') or []}
    clusters = {c.get('name'): c.get('cluster', {}) for c in config.get('clusters') or []}
    current = contexts.get(config.get('current-context'))
    if current is not None:
        cluster = clusters.get(current.get('cluster'), {})
    elif clusters:
        cluster = next(iter(clusters.values()))
    else:
        cluster = {}
    return cluster.get('server', '')


class ClusterClient:
    """Create-or-replace access to one cluster."""

    def __init__(
        self,
        kubeconfig: Path,
        work_dir: Path,
        kubectl: str = 'kubectl',
        runner: Callable[..., tuple[int, str, str]] = run_command,
        timeout: int = 120,
    ):
        self.kubeconfig = Path(kubeconfig)
        self.work_dir = Path(work_dir)
        self.kubectl = kubectl
        self.timeout = timeout
        self._run = runner
        self._counter = 0

    @classmethod
    def from_kubeconfig(cls, path: Path, work_dir: Optional[Path] = None) -> 'ClusterClient':
        path = Path(path)
        return cls(path, work_dir or path.parent / 'kubectl')

    @property
    def server(self) -> str:
        return kubeconfig_server(self.kubeconfig)

    def apply(
        self,
        doc: dict,
        default_namespace: str = 'default',
        source: str = '',
        track: bool = True,
    ) -> tuple[ObjectRef, str]:
        """Create the object, or replace it when it already exists.

        Args:
            doc: Parsed manifest document
            default_namespace: Namespace for documents that name none
            source: Manifest path for error messages
            track: Record the manifest hash and skip unchanged replaces

        Returns:
            (ref, outcome) where outcome is 'created', 'replaced' or 'unchanged'

        Raises:
            ApplyFailed: When kubectl or the API server rejects the object
        """
        ref = object_ref(doc, default_namespace, source)
        label = source or str(ref)
        body = copy.deepcopy(doc)
        digest = manifest_digest(doc)
        if track:
            annotations = body.setdefault('metadata', {}).setdefault('annotations', None) or {}
            annotations[APPLIED_HASH_ANNOTATION] = digest
            body['metadata']['annotations'] = annotations

        existing = self._get(body, ref, label)
        if existing is None:
            self._submit('create', body, ref, label)
            logger.info(f"Created {ref}")
            return ref, CREATED

        stored = existing.get('metadata') or {}
        if track and (stored.get('annotations') or {}).get(APPLIED_HASH_ANNOTATION) == digest:
            logger.info(f"Unchanged {ref}")
            return ref, UNCHANGED

        if stored.get('resourceVersion'):
            body['metadata']['resourceVersion'] = stored['resourceVersion']
        if ref.kind == 'Service':
            live_spec = existing.get('spec') or {}
            spec = body.setdefault('spec', {})
            for key in _SERVICE_IMMUTABLE_FIELDS:
                if key in live_spec and key not in spec:
                    spec[key] = live_spec[key]

        self._submit('replace', body, ref, label)
        logger.info(f"Replaced {ref}")
        return ref, REPLACED

    def ensure_pull_secret(self, name: str, namespace: str, docker_config: str) -> str:
        """Create or replace a kubernetes.io/dockerconfigjson secret.

        Returns:
            'created' or 'replaced'
        """
        doc = {
            'apiVersion': 'v1',
            'kind': 'Secret',
            'metadata': {'name': name, 'namespace': namespace},
            'type': 'kubernetes.io/dockerconfigjson',
            'stringData': {'.dockerconfigjson': docker_config},
        }
        # Secrets are always replaced; a hash of the payload is not stored
        _, outcome = self.apply(doc, namespace, source=f"secret {name}", track=False)
        return outcome

    def exists(self, ref: ObjectRef) -> bool:
        """Return True if the object can be read back from the cluster."""
        rc, out, err = self._kubectl(
            ['get', ref.resource, ref.name, '-o', 'name', '--ignore-not-found'],
            namespace=ref.namespace,
        )
        if rc != 0:
            logger.warning(f"Cannot read {ref}: {err.strip() or out.strip()}")
            return False
        return bool(out.strip())

    def _get(self, body: dict, ref: ObjectRef, label: str) -> Optional[dict]:
        manifest = self._write(body)
        rc, out, err = self._kubectl(
            ['get', '-f', str(manifest), '-o', 'json', '--ignore-not-found'],
            namespace=self._flag_namespace(body, ref),
        )
        if rc != 0:
            raise ApplyFailed(label, _brief_error(err, out, rc))
        if not out.strip():
            return None
        try:
            return json.loads(out)
        except ValueError as e:
            raise ApplyFailed(label, f"unreadable kubectl output: {e}")

    def _submit(self, verb: str, body: dict, ref: ObjectRef, label: str) -> None:
        manifest = self._write(body)
        rc, out, err = self._kubectl([verb, '-f', str(manifest)], namespace=self._flag_namespace(body, ref))
        if rc != 0:
            raise ApplyFailed(label, _brief_error(err, out, rc))

    @staticmethod
    def _flag_namespace(body: dict, ref: ObjectRef) -> Optional[str]:
        # kubectl rejects -n when it disagrees with the manifest's own namespace
        if (body.get('metadata') or {}).get('namespace'):
            return None
        return ref.namespace

    def _kubectl(self, args: list[str], namespace: Optional[str] = None) -> tuple[int, str, str]:
        cmd = [self.kubectl, '--kubeconfig', str(self.kubeconfig)]
        if namespace:
            cmd += ['-n', namespace]
        return self._run(cmd + args, timeout=self.timeout)

    def _write(self, body: dict) -> Path:
        """Write a document for kubectl -f. Files may hold secrets: owner-only."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self._counter += 1
        dest = self.work_dir / f"object-{self._counter:04d}.json"
        fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(body, f)
        return dest


def _brief_error(err: str, out: str, rc: int) -> str:
    text = (err or out).strip()
    if not text:
        return f"kubectl exited with code {rc}"
    return text.splitlines()[-1]
