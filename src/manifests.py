"""Manifest discovery, substitution and staging.

Configuration file paths are a comma-separated list of glob patterns
relative to the workspace (``k8s/*.yml, services/**/*.yaml``). Matched files
are read once; when substitution is enabled the substituted text is staged
into the run's scratch directory so workspace sources are never modified.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from errors import ManifestsNotFound
from substitution import substitute

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManifestUnit:
    """One manifest file ready to apply."""
    path: str  # relative to the workspace, posix separators
    source: Path
    raw_text: str
    text: str
    staged_path: Path

    @property
    def substituted(self) -> bool:
        return self.text != self.raw_text

    @property
    def name(self) -> str:
        return self.source.name


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying one manifest (or one document within it)."""
    path: str
    success: bool
    message: str = ''


def split_patterns(config_file_paths: str) -> list[str]:
    """Split a comma-separated pattern list, dropping blanks."""
    return [p.strip() for p in (config_file_paths or '').split(',') if p.strip()]


def find_manifests(workspace: Path, config_file_paths: str) -> list[Path]:
    """Return files under workspace matching any pattern, sorted and deduplicated.

    Raises:
        ManifestsNotFound: When no pattern matches a file
    """
    workspace = Path(workspace).resolve()
    found: dict[Path, None] = {}
    for pattern in split_patterns(config_file_paths):
        relative = pattern.lstrip('/')
        for match in workspace.glob(relative):
            if not match.is_file():
                continue
            resolved = match.resolve()
            try:
                resolved.relative_to(workspace)
            except ValueError:
                logger.warning(f"Ignoring {match}: outside workspace")
                continue
            found[resolved] = None

    if not found:
        raise ManifestsNotFound(config_file_paths, str(workspace))
    return sorted(found)


def resolve_manifests(
    workspace: Path,
    config_file_paths: str,
    env: Optional[Mapping[str, str]] = None,
    stage_dir: Optional[Path] = None,
) -> list[ManifestUnit]:
    """Read matched manifests, substituting from env when it is given.

    Args:
        workspace: Workspace root the patterns are relative to
        config_file_paths: Comma-separated glob patterns
        env: Substitution variables; None disables substitution
        stage_dir: Where substituted copies are written (required with env)

    Raises:
        ManifestsNotFound: No file matched
        SubstitutionError: A manifest has a malformed or unsafe placeholder
    """
    workspace = Path(workspace).resolve()
    units = []
    for source in find_manifests(workspace, config_file_paths):
        rel = source.relative_to(workspace).as_posix()
        raw = source.read_text(encoding='utf-8')
        text = raw
        staged = source
        if env is not None:
            text = substitute(raw, env)
            if text != raw:
                if stage_dir is None:
                    raise ValueError("stage_dir is required when substitution is enabled")
                staged = _stage(Path(stage_dir) / 'manifests' / rel, text)
                logger.debug(f"Staged substituted {rel} at {staged}")
        units.append(ManifestUnit(path=rel, source=source, raw_text=raw, text=text, staged_path=staged))

    logger.info(f"Resolved {len(units)} manifest file(s): {', '.join(u.path for u in units)}")
    return units


def _stage(dest: Path, text: str) -> Path:
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        f.write(text)
    return dest
