#!/usr/bin/env python3
"""Tests for kube.py - kubectl-driven create-or-replace client."""

import copy
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
import yaml
from conftest import COMBINED_RESOURCE, KUBECONFIG, FakeKubectl
from errors import ApplyFailed
from kube import (
    APPLIED_HASH_ANNOTATION,
    CREATED,
    REPLACED,
    UNCHANGED,
    ClusterClient,
    ObjectRef,
    kubeconfig_server,
    object_ref,
)


@pytest.fixture
def kubectl():
    return FakeKubectl()


@pytest.fixture
def client(tmp_path, kubectl):
    config = tmp_path / 'kubeconfig'
    config.write_text(KUBECONFIG)
    return ClusterClient(config, tmp_path / 'kubectl', runner=kubectl)


def _service(port):
    return {
        'apiVersion': 'v1',
        'kind': 'Service',
        'metadata': {'name': 'web'},
        'spec': {'selector': {'app': 'web'}, 'ports': [{'port': port, 'targetPort': 80}]},
    }


class TestObjectRef:

    def test_resource_with_group(self):
        assert ObjectRef('apps/v1', 'Deployment', 'nginx').resource == 'deployment.v1.apps'

    @pytest.mark.parametrize('kind', ['Service', 'Secret', 'ConfigMap'])
    def test_resource_core_group(self, kind):
        """Core-group resources need the trailing dot or kubectl reads the version as a group."""
        assert ObjectRef('v1', kind, 'nginx').resource == f'{kind.lower()}.v1.'

    def test_object_ref_defaults_namespace(self):
        ref = object_ref(_service(80), 'default')
        assert ref.namespace == 'default'
        assert str(ref) == 'Service/web in default'

    def test_object_ref_missing_fields(self):
        with pytest.raises(ApplyFailed) as exc_info:
            object_ref({'kind': 'Service', 'metadata': {}}, 'default', 'k8s/bad.yml')
        assert 'apiVersion' in str(exc_info.value)
        assert 'metadata.name' in str(exc_info.value)
        assert exc_info.value.code == 'E401'


class TestKubeconfigServer:

    def test_current_context(self, tmp_path):
        path = tmp_path / 'kubeconfig'
        path.write_text(KUBECONFIG)
        assert kubeconfig_server(path) == 'https://198.51.100.10:443'

    def test_client_server_property(self, client):
        assert client.server == 'https://198.51.100.10:443'


class TestApply:
    """Test create, replace and unchanged outcomes."""

    def test_create_then_unchanged(self, client, kubectl):
        """Applying the same manifest twice should not replace it."""
        ref, outcome = client.apply(_service(8080))
        assert outcome == CREATED
        stored = kubectl.get('Service', 'web')
        assert stored['metadata']['annotations'][APPLIED_HASH_ANNOTATION]

        _, outcome = client.apply(_service(8080))
        assert outcome == UNCHANGED
        assert kubectl.verbs().count('replace') == 0

    def test_redeploy_replaces_port(self, client, kubectl):
        """A changed port should be replaced, keeping the assigned clusterIP."""
        client.apply(_service(8080))
        _, outcome = client.apply(_service(9090))
        assert outcome == REPLACED
        stored = kubectl.get('Service', 'web')
        assert stored['spec']['ports'][0]['port'] == 9090
        assert stored['spec']['clusterIP'] == '10.0.0.10'

    def test_input_doc_not_modified(self, client):
        doc = _service(8080)
        before = copy.deepcopy(doc)
        client.apply(doc)
        assert doc == before

    def test_explicit_namespace_not_overridden(self, client, kubectl):
        doc = _service(80)
        doc['metadata']['namespace'] = 'web'
        ref, _ = client.apply(doc)
        assert ref.namespace == 'web'
        assert kubectl.get('Service', 'web', namespace='web') is not None
        assert all('-n' not in cmd for cmd in kubectl.calls)

    def test_rejected_object_raises(self, tmp_path):
        """kubectl failures should surface as ApplyFailed with its message."""
        config = tmp_path / 'kubeconfig'
        config.write_text(KUBECONFIG)
        rejecting = ClusterClient(config, tmp_path / 'kubectl', runner=FakeKubectl(reject_kinds={'Deployment'}))
        doc = list(yaml.safe_load_all(COMBINED_RESOURCE))[0]
        with pytest.raises(ApplyFailed) as exc_info:
            rejecting.apply(doc, source='k8s/combined-resource.yml')
        assert 'k8s/combined-resource.yml' in str(exc_info.value)
        assert 'is invalid' in str(exc_info.value)

    def test_object_files_owner_only(self, client, tmp_path):
        client.apply(_service(80))
        files = list((tmp_path / 'kubectl').iterdir())
        assert files
        assert all((f.stat().st_mode & 0o077) == 0 for f in files)


class TestPullSecret:

    def test_created_then_replaced(self, client, kubectl):
        """Pull secrets are always replaced on redeploy."""
        assert client.ensure_pull_secret('regcred', 'default', '{"auths": {}}') == CREATED
        assert client.ensure_pull_secret('regcred', 'default', '{"auths": {}}') == REPLACED
        secret = kubectl.get('Secret', 'regcred')
        assert secret['type'] == 'kubernetes.io/dockerconfigjson'
        assert 'annotations' not in secret['metadata']


class TestExists:

    def test_exists_after_create(self, client):
        ref, _ = client.apply(_service(80))
        assert client.exists(ref) is True

    def test_core_group_objects_read_back(self, client, kubectl):
        """Services and secrets are found with a version-qualified core resource."""
        service, _ = client.apply(_service(80))
        client.ensure_pull_secret('regcred', 'default', '{"auths": {}}')
        secret = ObjectRef('v1', 'Secret', 'regcred', 'default')

        assert client.exists(service) is True
        assert client.exists(secret) is True
        assert ['-n', 'default', 'get', 'service.v1.', 'web'] == kubectl.calls[-2][3:8]

    def test_unknown_resource_type_is_missing(self, client):
        ref = ObjectRef('v1', 'Widget', 'w', 'default')
        assert client.exists(ref) is False

    def test_missing(self, client):
        assert client.exists(ObjectRef('v1', 'Service', 'ghost', 'default')) is False
