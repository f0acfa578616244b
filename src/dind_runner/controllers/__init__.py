"""
Controllers for the Docker-in-Docker runner.

The registration supervisor runs as the container entrypoint; the
deployment manager backs the operator commands.
"""

from .deployment import DeploymentError, DeploymentManager
from .supervisor import (
    FatalConfigurationError,
    FatalRegistrationError,
    RegistrationSupervisor,
    SupervisorError,
)

__all__ = [
    "DeploymentError",
    "DeploymentManager",
    "FatalConfigurationError",
    "FatalRegistrationError",
    "RegistrationSupervisor",
    "SupervisorError",
]
