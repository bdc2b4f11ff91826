"""Deployment run reporting."""

from reporting.report import DeploymentReport, PhaseResult

__all__ = ['DeploymentReport', 'PhaseResult']
