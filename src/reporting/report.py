"""Deployment run reports (JSON and markdown)."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional


@dataclass
class PhaseResult:
    """Result of one pipeline command."""
    name: str
    description: str
    status: str  # 'passed', 'failed', 'cancelled', 'skipped'
    message: str = ''
    duration: float = 0.0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class DeploymentReport:
    """Collects per-command results; writes files only when report_dir is set.

    Messages come from command records, which are built from error messages
    that never include credential material.
    """
    run_id: str
    kind: str = ''
    report_dir: Optional[Path] = None
    phases: list[PhaseResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    _descriptions: dict[str, str] = field(default_factory=dict, repr=False)
    _phase_start: Optional[datetime] = field(default=None, repr=False)

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()
        if self.report_dir:
            self.report_dir.mkdir(parents=True, exist_ok=True)

    def start_phase(self, name: str, description: str):
        """Mark command start."""
        self._descriptions[name] = description
        self._phase_start = datetime.now()

    def pass_phase(self, name: str, message: str = '', duration: float = 0.0):
        """Record a successful command."""
        self._record_phase(name, 'passed', message, duration)

    def fail_phase(self, name: str, message: str = '', duration: float = 0.0, status: str = 'HasError'):
        """Record a failed or cancelled command."""
        self._record_phase(name, 'cancelled' if status == 'Cancelled' else 'failed', message, duration)

    def skip_phase(self, name: str, description: str):
        """Record a command that never ran."""
        self.phases.append(PhaseResult(name=name, description=description, status='skipped'))

    def _record_phase(self, name: str, status: str, message: str, duration: float):
        now = datetime.now()
        if duration == 0.0 and self._phase_start:
            duration = (now - self._phase_start).total_seconds()

        self.phases.append(PhaseResult(
            name=name,
            description=self._descriptions.get(name, name),
            status=status,
            message=message,
            duration=duration,
            started_at=self._phase_start,
            finished_at=now
        ))
        self._phase_start = None

    def finish(self, success: bool):
        """Finalize report and write files."""
        self.finished_at = datetime.now()
        self.success = success
        if self.report_dir:
            self._write_json()
            self._write_markdown()

    def _write_json(self):
        data = {
            'run_id': self.run_id,
            'kind': self.kind,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self.duration,
            'phases': [
                {
                    'name': p.name,
                    'description': p.description,
                    'status': p.status,
                    'message': p.message,
                    'duration': p.duration
                }
                for p in self.phases
            ]
        }
        with open(self.report_filename('json'), 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def _write_markdown(self):
        status = 'PASSED' if self.success else 'FAILED'
        lines = [
            f"# {self.kind} deployment {self.run_id}",
            "",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Commands",
            "",
            "| Command | Status | Duration | Message |",
            "|---------|--------|----------|---------|",
        ]

        for p in self.phases:
            status_emoji = {'passed': '✅', 'failed': '❌', 'cancelled': '⛔', 'skipped': '⏭️'}.get(p.status, '❓')
            message = p.message.replace('|', '\\|').replace('\n', ' ')
            lines.append(f"| {p.name} | {status_emoji} {p.status} | {p.duration:.1f}s | {message} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        with open(self.report_filename('md'), 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))

    def report_filename(self, ext: str) -> Path:
        """Report path: <timestamp>.<run_id>.<status>.<ext> under report_dir."""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        return Path(self.report_dir) / f"{timestamp}.{self.run_id}.{status}.{ext}"

    def to_dict(self, outputs: Optional[dict] = None) -> dict:
        """Return report as dictionary for JSON output.

        Args:
            outputs: Optional pipeline outputs to include. Private keys and
                     values that are not JSON-serializable are left out.
        """
        result = {
            'run_id': self.run_id,
            'kind': self.kind,
            'success': self.success,
            'duration_seconds': round(self.duration, 1),
            'phases': [
                {
                    'name': p.name,
                    'status': p.status,
                    'duration': round(p.duration, 1),
                }
                for p in self.phases
            ]
        }

        if not self.success:
            for p in self.phases:
                if p.status in ('failed', 'cancelled') and p.message:
                    result['error'] = p.message
                    break

        if outputs:
            serializable = {}
            for key, value in outputs.items():
                if key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    serializable[key] = value
                except (TypeError, ValueError):
                    pass
            if serializable:
                result['outputs'] = serializable

        return result
