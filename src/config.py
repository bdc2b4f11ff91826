"""Deployment configuration management.

Configuration is loaded from YAML files:
- deploy.yaml: What to deploy and where (orchestrator, master, manifests)
- secrets.yaml: All sensitive values (SSH keys, passphrases, registry credentials)

secrets.yaml is looked up beside deploy.yaml unless $ACS_DRIVER_SECRETS
points elsewhere. deploy.yaml never holds secret values, only keys into
secrets.yaml.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from context import DcosTarget, DeploymentCommandData, KubernetesTarget, OrchestratorKind, SwarmTarget
from credentials import RegistryEndpoint, SecretsFileCredentialStore
from errors import UnsupportedOrchestrator

CONFIG_ENV = 'ACS_DRIVER_CONFIG'
SECRETS_ENV = 'ACS_DRIVER_SECRETS'
DEFAULT_CONFIG = 'deploy.yaml'

_TOP_LEVEL_KEYS = {
    'name', 'orchestrator', 'master_endpoint', 'ssh_port', 'admin_username',
    'ssh_private_key', 'ssh_private_key_file', 'ssh_passphrase',
    'config_file_paths', 'enable_config_substitution', 'registry_credentials',
    'kubernetes', 'dcos', 'swarm',
}

_TARGETS = {
    OrchestratorKind.KUBERNETES: KubernetesTarget,
    OrchestratorKind.DCOS: DcosTarget,
    OrchestratorKind.SWARM: SwarmTarget,
}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class DeployConfig:
    """Deployment configuration loaded from deploy.yaml.

    Secret values (SSH key text, passphrase) are resolved from secrets.yaml
    by key reference at load time and kept out of repr.
    """
    config_file: Path
    name: str = ''
    orchestrator: str = ''
    master_endpoint: str = ''
    ssh_port: Optional[int] = None
    admin_username: str = 'azureuser'
    config_file_paths: str = ''
    enable_config_substitution: bool = False
    registry_endpoints: list[RegistryEndpoint] = field(default_factory=list)
    target_settings: dict = field(default_factory=dict)

    _ssh_private_key: Optional[str] = field(default=None, init=False, repr=False)
    _ssh_passphrase: Optional[str] = field(default=None, init=False, repr=False)
    _secrets: dict = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        if isinstance(self.config_file, str):
            self.config_file = Path(self.config_file)
        if not self.config_file.exists():
            raise ConfigError(f"Config file not found: {self.config_file}")
        self._load_from_yaml()

    def _load_from_yaml(self):
        """Load configuration from YAML file with secrets resolution."""
        config = _parse_yaml(self.config_file)
        if not isinstance(config, dict):
            raise ConfigError(f"{self.config_file}: expected a mapping at top level")

        unknown = sorted(set(config) - _TOP_LEVEL_KEYS)
        if unknown:
            raise ConfigError(f"{self.config_file}: unknown keys: {', '.join(unknown)}")

        self._secrets = _load_secrets(self.config_file.parent) or {}

        self.name = str(config.get('name') or self.name or self.config_file.stem)
        self.orchestrator = str(config.get('orchestrator') or '')
        self.master_endpoint = str(config.get('master_endpoint') or '')
        for key in ('orchestrator', 'master_endpoint', 'config_file_paths'):
            if not config.get(key):
                raise ConfigError(f"{self.config_file}: '{key}' is required")

        if (port := config.get('ssh_port')) is not None:
            try:
                self.ssh_port = int(port)
            except (TypeError, ValueError):
                raise ConfigError(f"{self.config_file}: ssh_port must be an integer, got {port!r}")

        if admin_username := config.get('admin_username'):
            self.admin_username = str(admin_username)

        paths = config['config_file_paths']
        self.config_file_paths = ','.join(paths) if isinstance(paths, list) else str(paths)
        substitution = config.get('enable_config_substitution', False)
        if not isinstance(substitution, bool):
            raise ConfigError(
                f"{self.config_file}: enable_config_substitution must be true or false, got {substitution!r}"
            )
        self.enable_config_substitution = substitution

        self.registry_endpoints = []
        for entry in config.get('registry_credentials') or []:
            if not isinstance(entry, dict):
                raise ConfigError(f"{self.config_file}: registry_credentials entries must be mappings")
            self.registry_endpoints.append(RegistryEndpoint(
                url=str(entry.get('url') or ''),
                credentials_id=str(entry.get('credentials_id') or ''),
            ))

        try:
            kind = OrchestratorKind.parse(self.orchestrator)
        except UnsupportedOrchestrator as e:
            raise ConfigError(f"{self.config_file}: {e.message}")
        self.target_settings = dict(config.get(kind.value) or {})

        # Private key: inline key reference into secrets, or a file path
        if key_ref := config.get('ssh_private_key'):
            keys = self._secrets.get('ssh_keys') or {}
            if key_ref not in keys:
                raise ConfigError(f"SSH key '{key_ref}' not found in secrets.yaml ssh_keys")
            self._ssh_private_key = str(keys[key_ref])
        elif key_file := config.get('ssh_private_key_file'):
            path = Path(os.path.expanduser(str(key_file)))
            if not path.is_absolute():
                path = self.config_file.parent / path
            if not path.exists():
                raise ConfigError(f"SSH private key file not found: {path}")
            self._ssh_private_key = path.read_text(encoding='utf-8')

        if passphrase_ref := config.get('ssh_passphrase'):
            passphrases = self._secrets.get('ssh_passphrases') or {}
            if passphrase_ref not in passphrases:
                raise ConfigError(f"SSH passphrase '{passphrase_ref}' not found in secrets.yaml ssh_passphrases")
            self._ssh_passphrase = str(passphrases[passphrase_ref])

    @property
    def kind(self) -> OrchestratorKind:
        return OrchestratorKind.parse(self.orchestrator)

    def to_command_data(self) -> DeploymentCommandData:
        """Build the frozen command data for this configuration.

        Raises:
            ConfigError: On unknown settings in the orchestrator section
        """
        target_cls = _TARGETS[self.kind]
        settings = {k: str(v) for k, v in self.target_settings.items()}
        if self.kind is OrchestratorKind.SWARM:
            # Redeploys must land in the same compose project whatever the file is called
            settings.setdefault('project', self.name)
        try:
            target = target_cls(**settings)
        except TypeError:
            raise ConfigError(
                f"{self.config_file}: invalid keys in '{self.kind.value}' section: "
                f"{', '.join(sorted(self.target_settings))}"
            )
        return DeploymentCommandData(
            target=target,
            master_endpoint=self.master_endpoint,
            admin_username=self.admin_username,
            ssh_private_key=self._ssh_private_key,
            ssh_passphrase=self._ssh_passphrase,
            ssh_port=self.ssh_port,
            config_file_paths=self.config_file_paths,
            enable_config_substitution=self.enable_config_substitution,
            registry_endpoints=tuple(self.registry_endpoints),
        )

    def credential_store(self) -> SecretsFileCredentialStore:
        """Credential store over the loaded secrets."""
        return SecretsFileCredentialStore(self._secrets)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")


def _load_secrets(config_dir: Path) -> Optional[dict]:
    """Load secrets.yaml from $ACS_DRIVER_SECRETS or beside the config file."""
    if env_path := os.environ.get(SECRETS_ENV):
        secrets_file = Path(env_path)
        if not secrets_file.exists():
            raise ConfigError(f"{SECRETS_ENV}={env_path} does not exist")
    else:
        secrets_file = config_dir / 'secrets.yaml'
        if not secrets_file.exists():
            return None
    secrets = _parse_yaml(secrets_file)
    if not isinstance(secrets, dict):
        raise ConfigError(f"{secrets_file}: expected a mapping at top level")
    return secrets


def get_config_path(path: Optional[str] = None) -> Path:
    """Resolve the deploy config path: argument, then $ACS_DRIVER_CONFIG, then ./deploy.yaml."""
    if path:
        return Path(path)
    if env_path := os.environ.get(CONFIG_ENV):
        return Path(env_path)
    return Path(DEFAULT_CONFIG)


def load_deploy_config(path: Optional[str] = None) -> DeployConfig:
    """Load the deployment configuration."""
    return DeployConfig(config_file=get_config_path(path))
