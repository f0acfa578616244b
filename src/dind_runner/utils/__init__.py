"""
Utility modules for the Docker-in-Docker runner.

This package contains the gitlab-runner and compose command wrappers,
the persisted identity record, the process handoff and security helpers.
"""

from .compose import ComposeClient, ComposeError
from .gitlab_client import GitLabProbe, GitLabProbeError
from .identity import RunnerIdentityRecord
from .process import hand_off
from .runner_cli import GitLabRunnerCLI, RunnerCommandError
from .security import ProfileAuditor

__all__ = [
    "ComposeClient",
    "ComposeError",
    "GitLabProbe",
    "GitLabProbeError",
    "GitLabRunnerCLI",
    "ProfileAuditor",
    "RunnerCommandError",
    "RunnerIdentityRecord",
    "hand_off",
]
