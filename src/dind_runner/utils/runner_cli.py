"""
Wrapper around the ``gitlab-runner`` command-line tool.

Builds the argument vectors for ``register``, ``verify`` and ``run`` from
the immutable settings models and invokes them. Registration tokens are
redacted from everything that gets logged.
"""

import subprocess
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import structlog

from ..models.runner import (
    ExecutorProfile,
    PullPolicy,
    RegistrationSettings,
    WorkerSettings,
)
from .security import ProfileAuditor


CommandRunner = Callable[..., subprocess.CompletedProcess]


class RunnerCommandError(Exception):
    """Raised when a gitlab-runner command cannot be executed at all."""

    def __init__(self, command: str, message: str) -> None:
        super().__init__(f"gitlab-runner {command} could not be executed: {message}")
        self.command = command


class GitLabRunnerCLI:
    """
    Thin, testable wrapper over the ``gitlab-runner`` binary.

    Output of the subprocesses is not captured: it goes straight to the
    container log alongside the supervisor's own messages.
    """

    def __init__(self,
                 config_path: Path,
                 worker: Optional[WorkerSettings] = None,
                 runner: Optional[CommandRunner] = None,
                 logger: Any = None) -> None:
        """
        Initialize the wrapper.

        Args:
            config_path: Runner configuration file passed via ``--config``
            worker: Worker binary and identity
            runner: Callable with the ``subprocess.run`` signature
            logger: Structured logger instance
        """
        self.config_path = Path(config_path)
        self.worker = worker or WorkerSettings()
        self._runner = runner or subprocess.run
        self.logger = (logger or structlog.get_logger()).bind(component="runner_cli")

    @property
    def binary(self) -> str:
        return self.worker.binary

    def build_register_command(self,
                               registration: RegistrationSettings,
                               profile: ExecutorProfile) -> List[str]:
        """Assemble the non-interactive ``register`` command line."""
        argv = [
            self.binary, "register",
            "--non-interactive",
            "--config", str(self.config_path),
            "--url", registration.server_url,
            "--registration-token", registration.registration_token.get_secret_value(),
            "--executor", profile.executor,
            "--docker-image", profile.image,
        ]

        if profile.privileged:
            argv.append("--docker-privileged")

        argv.extend(["--description", profile.description])

        for volume in profile.volumes:
            argv.extend(["--docker-volumes", volume])

        argv.extend([
            "--docker-network-mode", profile.network_mode,
            "--docker-memory", profile.memory,
            "--docker-memory-swap", profile.memory_swap,
            "--docker-cpus", profile.cpus,
            "--docker-pull-policy", PullPolicy(profile.pull_policy).value,
            "--docker-wait-for-services-timeout", str(profile.wait_for_services_timeout),
        ])

        if profile.tags:
            argv.extend(["--tag-list", ",".join(profile.tags)])

        return argv

    def build_verify_command(self) -> List[str]:
        return [self.binary, "verify", "--config", str(self.config_path)]

    def build_run_command(self) -> List[str]:
        return [
            self.binary, "run",
            f"--user={self.worker.user}",
            f"--working-directory={self.worker.working_directory}",
            "--config", str(self.config_path),
        ]

    def register(self,
                 registration: RegistrationSettings,
                 profile: ExecutorProfile) -> int:
        """
        Register the runner with the GitLab server.

        Returns:
            Exit status of ``gitlab-runner register``

        Raises:
            RunnerCommandError: If the binary cannot be executed
        """
        argv = self.build_register_command(registration, profile)
        self.logger.info(
            "Registering runner",
            url=registration.server_url,
            executor=profile.executor,
            image=profile.image,
            description=profile.description
        )
        return self._execute("register", argv)

    def verify(self) -> int:
        """
        Verify the persisted runner configuration against the server.

        Raises:
            RunnerCommandError: If the binary cannot be executed
        """
        return self._execute("verify", self.build_verify_command())

    def _execute(self, command: str, argv: Sequence[str]) -> int:
        self.logger.debug("Executing command", argv=ProfileAuditor.redact_command(argv))

        try:
            result = self._runner(list(argv), check=False)
        except OSError as e:
            self.logger.error("Command could not be executed", command=command, error=str(e))
            raise RunnerCommandError(command, str(e))

        self.logger.debug("Command finished", command=command, returncode=result.returncode)
        return result.returncode
