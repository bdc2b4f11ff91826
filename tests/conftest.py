"""Shared pytest fixtures for acs-driver tests."""

import json
import sys
from contextlib import contextmanager
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from context import DeploymentCommandData, JobContext, KubernetesTarget  # noqa: E402
from credentials import Credential, RegistryEndpoint  # noqa: E402

KUBECONFIG = """
apiVersion: v1
kind: Config
current-context: acs
clusters:
  - name: acs
    cluster:
      server: https://198.51.100.10:443
contexts:
  - name: acs
    context:
      cluster: acs
      user: admin
users:
  - name: admin
    user:
      token: not-a-real-token
"""

COMBINED_RESOURCE = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: nginx
spec:
  replicas: 1
  selector:
    matchLabels:
      app: nginx
  template:
    metadata:
      labels:
        app: nginx
    spec:
      containers:
        - name: nginx
          image: nginx:1.25
          ports:
            - containerPort: 80
---
apiVersion: v1
kind: Service
metadata:
  name: nginx
spec:
  type: LoadBalancer
  selector:
    app: nginx
  ports:
    - port: 8080
      targetPort: 80
"""

REDEPLOY_SERVICE = """
apiVersion: v1
kind: Service
metadata:
  name: web
spec:
  selector:
    app: web
  ports:
    - port: ${SERVICE_PORT}
      targetPort: 80
"""


# API group of each resource type the fake cluster serves ('' is the core group)
RESOURCE_GROUPS = {
    'pod': '',
    'service': '',
    'secret': '',
    'configmap': '',
    'deployment': 'apps',
    'statefulset': 'apps',
}


class FakeSession:
    """Stands in for remote.RemoteSession.

    ``responses`` maps a command substring to (exit_code, stdout); the first
    matching entry wins, unmatched commands succeed with empty output.
    """

    def __init__(self, target='azureuser@192.0.2.10', files=None, responses=None):
        self.target = target
        self.files = dict(files or {})
        self.responses = list(responses or [])
        self.executed: list[str] = []
        self.uploads: list[tuple[str, str]] = []
        self.uploaded_text: dict[str, str] = {}
        self.closed = False

    def execute(self, command, check=True):
        from errors import RemoteExecutionFailed
        self.executed.append(command)
        rc, out = 0, ''
        for needle, response in self.responses:
            if needle in command:
                rc, out = response
                break
        if check and rc != 0:
            raise RemoteExecutionFailed('Remote command', rc, out)
        return rc, out

    def copy_to(self, local_path, remote_path):
        self.uploads.append((str(local_path), remote_path))
        path = Path(local_path)
        if path.suffix in ('.json', '.yml', '.yaml'):
            self.uploaded_text[remote_path] = path.read_text(encoding='utf-8')

    def copy_from(self, remote_path, local_path):
        if remote_path not in self.files:
            from errors import RemoteExecutionFailed
            raise RemoteExecutionFailed(f'Download of {remote_path}', 1, 'No such file or directory')
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        Path(local_path).write_text(self.files[remote_path], encoding='utf-8')


class FakeConnector:
    """Session factory that records how often a connection was opened."""

    def __init__(self, session=None):
        self.session = session or FakeSession(files={'.kube/config': KUBECONFIG})
        self.opened = 0

    @contextmanager
    def __call__(self, data, job):
        self.opened += 1
        try:
            yield self.session
        finally:
            self.session.closed = True


class FakeKubectl:
    """In-memory cluster answering the kubectl calls ClusterClient makes."""

    def __init__(self, reject_kinds=()):
        self.objects: dict[tuple[str, str, str], dict] = {}
        self.calls: list[list[str]] = []
        self.reject_kinds = set(reject_kinds)
        self._version = 0

    def __call__(self, cmd, timeout=None, **kwargs):
        self.calls.append(cmd)
        args = cmd[3:]  # drop kubectl --kubeconfig <path>
        namespace = 'default'
        if args[:1] == ['-n']:
            namespace = args[1]
            args = args[2:]
        verb = args[0]

        if verb == 'get' and args[1] == '-f':
            body = self._load(args[2])
            stored = self.objects.get(self._key(body, namespace))
            return 0, json.dumps(stored) if stored else '', ''

        if verb == 'get':
            kind = self._resource_kind(args[1])
            if kind is None:
                return 1, '', f'error: the server doesn\'t have a resource type "{args[1]}"'
            for (k, ns, name) in self.objects:
                if k.lower() == kind and ns == namespace and name == args[2]:
                    return 0, f'{kind}/{name}\n', ''
            return 0, '', ''

        body = self._load(args[2])
        key = self._key(body, namespace)
        if body['kind'] in self.reject_kinds:
            return 1, '', f'The {body["kind"]} "{key[2]}" is invalid: spec: Required value'

        if verb == 'create':
            if key in self.objects:
                return 1, '', f'Error from server (AlreadyExists): {key[2]} already exists'
            if body['kind'] == 'Service':
                body.setdefault('spec', {}).setdefault('clusterIP', '10.0.0.10')
            return self._store(key, body)

        if verb == 'replace':
            stored = self.objects.get(key)
            if stored is None:
                return 1, '', f'Error from server (NotFound): {key[2]} not found'
            if body['metadata'].get('resourceVersion') != stored['metadata']['resourceVersion']:
                return 1, '', 'Error from server (Conflict): the object has been modified'
            if body['kind'] == 'Service' and body['spec'].get('clusterIP') != stored['spec'].get('clusterIP'):
                return 1, '', 'The Service "web" is invalid: spec.clusterIP: Invalid value: "": field is immutable'
            return self._store(key, body)

        return 1, '', f'unknown command {verb}'

    def get(self, kind, name, namespace='default'):
        return self.objects.get((kind, namespace, name))

    def verbs(self):
        verbs = []
        for cmd in self.calls:
            args = cmd[3:]
            if args[:1] == ['-n']:
                args = args[2:]
            verbs.append(args[0])
        return verbs

    def _store(self, key, body):
        self._version += 1
        body['metadata']['resourceVersion'] = str(self._version)
        self.objects[key] = body
        return 0, f'{key[0].lower()}/{key[2]} ok\n', ''

    @staticmethod
    def _resource_kind(arg):
        """Split a resource argument the way kubectl does.

        ``a.b.c`` is resource.version.group (the group may be empty, as in
        ``service.v1.``) while ``a.b`` is resource.group.
        """
        parts = arg.split('.')
        if len(parts) >= 3:
            resource, group = parts[0], '.'.join(parts[2:])
        elif len(parts) == 2:
            resource, group = parts
        else:
            resource, group = parts[0], None
        if resource not in RESOURCE_GROUPS:
            return None
        if group is not None and group != RESOURCE_GROUPS[resource]:
            return None
        return resource

    @staticmethod
    def _load(path):
        return json.loads(Path(path).read_text(encoding='utf-8'))

    @staticmethod
    def _key(body, namespace):
        metadata = body.get('metadata') or {}
        return body['kind'], metadata.get('namespace') or namespace, metadata['name']


class DictCredentialStore:
    """Credential store over a plain dict."""

    def __init__(self, entries=None):
        self.entries = dict(entries or {})
        self.lookups: list[str] = []

    def resolve(self, identifier):
        from errors import CredentialNotFound
        self.lookups.append(identifier)
        if identifier not in self.entries:
            raise CredentialNotFound(identifier)
        return self.entries[identifier]


@pytest.fixture
def workspace(tmp_path):
    """Workspace with Kubernetes, DC/OS and compose manifests."""
    ws = tmp_path / 'workspace'
    (ws / 'k8s').mkdir(parents=True)
    (ws / 'k8s' / 'combined-resource.yml').write_text(COMBINED_RESOURCE)
    (ws / 'dcos').mkdir()
    (ws / 'dcos' / 'nginx.json').write_text(json.dumps({
        'id': 'nginx',
        'instances': 1,
        'container': {'type': 'DOCKER', 'docker': {'image': 'nginx:${IMAGE_TAG}'}},
    }))
    (ws / 'swarm').mkdir()
    (ws / 'swarm' / 'web.yml').write_text(
        "version: '2'\nservices:\n  web:\n    image: nginx:${IMAGE_TAG}\n    ports:\n      - '80:80'\n"
    )
    return ws


@pytest.fixture
def job(workspace):
    """Job context over the workspace, torn down after the test."""
    with JobContext(workspace, env={'IMAGE_TAG': '1.25'}, run_id='test-run', principal='web-deploy') as ctx:
        yield ctx


@pytest.fixture
def kube_data():
    """Kubernetes command data for the combined-resource manifest."""
    return DeploymentCommandData(
        target=KubernetesTarget(),
        master_endpoint='192.0.2.10',
        ssh_private_key='-----BEGIN KEY-----\nnot-a-real-key\n-----END KEY-----',
        config_file_paths='k8s/combined-resource.yml',
    )


@pytest.fixture
def registry_store():
    """Store holding one registry credential."""
    return DictCredentialStore({'acr': Credential(username='deployer', secret='s3cret-pass')})


@pytest.fixture
def registry_endpoint():
    return RegistryEndpoint(url='https://myregistry.example.com', credentials_id='acr')
