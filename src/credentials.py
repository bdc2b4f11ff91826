"""Docker registry credential resolution and auth material.

Declared registry endpoints name a credential identifier; the resolver turns
them into (registry URL, username, token) triples using an explicit
credential store. Resolution is all-or-nothing: an identifier that cannot be
resolved fails the whole call, since deploying without registry access
would only surface later as image pull errors on the cluster.
"""

import base64
import io
import json
import logging
import os
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Protocol, runtime_checkable

import yaml

from errors import CredentialNotFound

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = 'https://index.docker.io/v1/'


@dataclass(frozen=True)
class RegistryEndpoint:
    """A declared private registry and the credential used to pull from it."""
    url: str = ''
    credentials_id: str = ''


@dataclass(frozen=True)
class Credential:
    """Username/secret pair held by the credential store."""
    username: str
    secret: str = field(repr=False)
    scopes: tuple[str, ...] = ()  # empty means usable by any job


@dataclass(frozen=True)
class ResolvedRegistryCredential:
    """Registry URL with its basic-auth token."""
    url: str
    username: str
    token: str = field(repr=False)

    @classmethod
    def from_credential(cls, url: str, credential: Credential) -> 'ResolvedRegistryCredential':
        raw = f"{credential.username}:{credential.secret}".encode('utf-8')
        return cls(
            url=url,
            username=credential.username,
            token=base64.b64encode(raw).decode('ascii'),
        )


@runtime_checkable
class CredentialStore(Protocol):
    """Looks up a credential by identifier."""

    def resolve(self, identifier: str) -> Credential:
        """Return the credential or raise CredentialNotFound."""
        ...


class SecretsFileCredentialStore:
    """Credential store backed by the ``registry_credentials`` section of secrets.yaml.

    Expected layout::

        registry_credentials:
          acr:
            username: myregistry
            password: s3cret
            scopes: [web-deploy]   # optional
    """

    def __init__(self, secrets: dict):
        self._entries = secrets.get('registry_credentials') or {}

    @classmethod
    def from_file(cls, path: Path) -> 'SecretsFileCredentialStore':
        with open(path, encoding="utf-8") as f:
            return cls(yaml.safe_load(f) or {})

    def resolve(self, identifier: str) -> Credential:
        entry = self._entries.get(identifier)
        if not isinstance(entry, dict):
            raise CredentialNotFound(identifier)
        username = entry.get('username')
        password = entry.get('password')
        if not username or password is None:
            raise CredentialNotFound(identifier, 'is missing username or password')
        scopes = entry.get('scopes') or ()
        if isinstance(scopes, str):
            scopes = (scopes,)
        return Credential(username=str(username), secret=str(password), scopes=tuple(scopes))


def normalize_registry_url(url: str) -> str:
    """Apply the default registry and scheme to a declared URL."""
    url = (url or '').strip()
    if not url:
        return DEFAULT_REGISTRY
    if '://' not in url:
        url = f'https://{url}'
    return url


class CredentialResolver:
    """Resolves declared registry endpoints against a credential store."""

    def __init__(self, store: CredentialStore):
        self.store = store

    def resolve(
        self,
        endpoints: Iterable[RegistryEndpoint],
        principal: Optional[str] = None
    ) -> list[ResolvedRegistryCredential]:
        """Resolve every endpoint that declares a credential.

        Args:
            endpoints: Declared registry endpoints
            principal: Job identity used to check credential scopes

        Returns:
            One credential per distinct registry URL (last declaration wins),
            in declaration order. Empty when nothing is declared.

        Raises:
            CredentialNotFound: For the first identifier that cannot be
                resolved or is not usable by principal
        """
        resolved: dict[str, ResolvedRegistryCredential] = {}
        for endpoint in endpoints:
            url = normalize_registry_url(endpoint.url)
            if not endpoint.credentials_id:
                logger.debug(f"No credentials declared for {url}, pulling anonymously")
                continue
            credential = self.store.resolve(endpoint.credentials_id)
            if credential.scopes and principal not in credential.scopes:
                raise CredentialNotFound(
                    endpoint.credentials_id,
                    f"is not available to job '{principal}'"
                )
            resolved.pop(url, None)
            resolved[url] = ResolvedRegistryCredential.from_credential(url, credential)
            logger.info(f"Resolved registry credential '{endpoint.credentials_id}' for {url}")
        return list(resolved.values())


def docker_config_json(credentials: Iterable[ResolvedRegistryCredential]) -> str:
    """Render a docker client config.json for the given credentials."""
    auths = {c.url: {'auth': c.token} for c in credentials}
    return json.dumps({'auths': auths}, indent=2, sort_keys=True)


def write_docker_config(credentials: Iterable[ResolvedRegistryCredential], dest: Path) -> Path:
    """Write config.json with owner-only permissions."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        f.write(docker_config_json(credentials))
    return dest


def write_docker_config_archive(credentials: Iterable[ResolvedRegistryCredential], dest: Path) -> Path:
    """Write docker.tar.gz holding .docker/config.json.

    This is the layout Marathon's fetcher expects when an app lists the
    archive in its ``uris`` (or ``fetch``) section.
    """
    payload = docker_config_json(credentials).encode('utf-8')
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as raw, tarfile.open(fileobj=raw, mode='w:gz') as tar:
        directory = tarfile.TarInfo('.docker')
        directory.type = tarfile.DIRTYPE
        directory.mode = 0o700
        tar.addfile(directory)
        info = tarfile.TarInfo('.docker/config.json')
        info.size = len(payload)
        info.mode = 0o600
        tar.addfile(info, io.BytesIO(payload))
    return dest
