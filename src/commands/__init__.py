"""Orchestrator command sets.

Every kind runs the same three commands: resolve-credentials,
prepare-manifests, then its own deploy command. The kind-specific parts
(deploy command and substitution variables) come from an immutable table
keyed by orchestrator kind.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Optional

from commands import dcos, kubernetes, swarm
from commands.shared import (
    Collaborators,
    ExtraEnv,
    open_session,
    prepare_manifests_command,
    resolve_credentials_command,
)
from context import DeploymentCommandData, OrchestratorKind
from errors import UnsupportedOrchestrator
from pipeline import Command


@dataclass(frozen=True)
class KindEntry:
    """What one orchestrator kind contributes to the command set."""
    deploy: Callable[[Collaborators], Command]
    substitution_env: Optional[ExtraEnv] = None


KINDS = MappingProxyType({
    OrchestratorKind.KUBERNETES: KindEntry(kubernetes.deploy_command, kubernetes.substitution_env),
    OrchestratorKind.DCOS: KindEntry(dcos.deploy_command, dcos.substitution_env),
    OrchestratorKind.SWARM: KindEntry(swarm.deploy_command),
})


def build_command_set(data: DeploymentCommandData, collaborators: Collaborators) -> list[Command]:
    """Return the ordered command list for the data's orchestrator kind.

    Raises:
        UnsupportedOrchestrator: When no entry exists for the kind
    """
    entry = KINDS.get(data.kind)
    if entry is None:
        raise UnsupportedOrchestrator(str(data.kind), list_kinds())
    return [
        resolve_credentials_command(collaborators.store),
        prepare_manifests_command(entry.substitution_env),
        entry.deploy(collaborators),
    ]


def list_kinds() -> list[str]:
    """List supported orchestrator kind names."""
    return sorted(kind.value for kind in KINDS)


__all__ = [
    'Collaborators',
    'KINDS',
    'KindEntry',
    'build_command_set',
    'list_kinds',
    'open_session',
]
