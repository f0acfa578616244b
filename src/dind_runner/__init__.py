"""
GitLab Docker-in-Docker runner tooling.

Container entrypoint and operator CLI for a GitLab CI runner that executes
jobs against a Docker-in-Docker daemon.

This package implements:
- Idempotent one-time runner registration with a fixed executor profile
- Handoff of the container process to the long-running runner daemon
- docker-compose lifecycle, backup and restore commands for operators
"""

__version__ = "0.1.0"

from .controllers.deployment import DeploymentManager
from .controllers.supervisor import RegistrationSupervisor
from .models.runner import ExecutorProfile, SupervisorPhase, SupervisorSettings

__all__ = [
    "DeploymentManager",
    "ExecutorProfile",
    "RegistrationSupervisor",
    "SupervisorPhase",
    "SupervisorSettings",
]
