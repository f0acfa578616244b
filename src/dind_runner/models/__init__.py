"""
Configuration models for the runner supervisor and deployment tooling.
"""

from .runner import (
    DeploymentSettings,
    ExecutorProfile,
    PullPolicy,
    RegistrationSettings,
    SupervisorPhase,
    SupervisorSettings,
    VerificationOutcome,
    WorkerSettings,
)

__all__ = [
    "DeploymentSettings",
    "ExecutorProfile",
    "PullPolicy",
    "RegistrationSettings",
    "SupervisorPhase",
    "SupervisorSettings",
    "VerificationOutcome",
    "WorkerSettings",
]
