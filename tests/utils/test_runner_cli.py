"""
gitlab-runner command wrapper tests.
"""

import subprocess
from pathlib import Path

import pytest
import structlog

from dind_runner.models.runner import (
    ExecutorProfile,
    PullPolicy,
    RegistrationSettings,
    WorkerSettings,
)
from dind_runner.utils.runner_cli import GitLabRunnerCLI, RunnerCommandError
from dind_runner.utils.security import REDACTED


class RecordingRunner:
    def __init__(self, returncode=0, error=None):
        self.returncode = returncode
        self.error = error
        self.calls = []

    def __call__(self, argv, **kwargs):
        self.calls.append((list(argv), kwargs))
        if self.error:
            raise self.error
        return subprocess.CompletedProcess(argv, self.returncode)


class TestGitLabRunnerCLI:
    """Test argument assembly and invocation."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config_path = Path("/etc/gitlab-runner/config.toml")
        self.registration = RegistrationSettings(
            server_url="https://ci.example.com",
            registration_token="abc123",
        )
        self.runner = RecordingRunner()
        self.cli = GitLabRunnerCLI(self.config_path, runner=self.runner)

    def test_register_command_with_default_profile(self):
        argv = self.cli.build_register_command(self.registration, ExecutorProfile())

        assert argv == [
            "gitlab-runner", "register",
            "--non-interactive",
            "--config", "/etc/gitlab-runner/config.toml",
            "--url", "https://ci.example.com",
            "--registration-token", "abc123",
            "--executor", "docker",
            "--docker-image", "docker:24.0.5",
            "--docker-privileged",
            "--description", "Auto-registered runner",
            "--docker-volumes", "/certs/client",
            "--docker-volumes", "/cache",
            "--docker-volumes", "/var/run/docker.sock:/var/run/docker.sock",
            "--docker-network-mode", "gitlab-runner-network",
            "--docker-memory", "2g",
            "--docker-memory-swap", "2g",
            "--docker-cpus", "2",
            "--docker-pull-policy", "if-not-present",
            "--docker-wait-for-services-timeout", "30",
        ]

    def test_register_command_with_custom_profile(self):
        profile = ExecutorProfile(
            image="docker:25.0.3",
            privileged=False,
            volumes=["/cache"],
            pull_policy=PullPolicy.ALWAYS,
            tags=["docker", " dind "],
        )

        argv = self.cli.build_register_command(self.registration, profile)

        assert "--docker-privileged" not in argv
        assert argv[argv.index("--docker-image") + 1] == "docker:25.0.3"
        assert argv.count("--docker-volumes") == 1
        assert argv[argv.index("--docker-pull-policy") + 1] == "always"
        assert argv[argv.index("--tag-list") + 1] == "docker,dind"

    def test_register_returns_exit_status(self):
        self.runner.returncode = 3

        assert self.cli.register(self.registration, ExecutorProfile()) == 3
        argv, kwargs = self.runner.calls[0]
        assert argv[1] == "register"
        assert kwargs["check"] is False

    def test_register_does_not_log_token(self):
        """The registration token never reaches the log output."""
        with structlog.testing.capture_logs() as logs:
            self.cli.register(self.registration, ExecutorProfile())

        assert "abc123" not in repr(logs)
        debug_argv = [entry["argv"] for entry in logs if "argv" in entry]
        assert debug_argv and REDACTED in debug_argv[0]

    def test_verify_command(self):
        assert self.cli.build_verify_command() == [
            "gitlab-runner", "verify", "--config", "/etc/gitlab-runner/config.toml",
        ]
        assert self.cli.verify() == 0

    def test_run_command_uses_worker_settings(self):
        cli = GitLabRunnerCLI(
            self.config_path,
            worker=WorkerSettings(
                binary="/usr/bin/gitlab-runner",
                user="ci",
                working_directory="/srv/ci",
            ),
        )

        assert cli.build_run_command() == [
            "/usr/bin/gitlab-runner", "run",
            "--user=ci",
            "--working-directory=/srv/ci",
            "--config", "/etc/gitlab-runner/config.toml",
        ]

    def test_missing_binary_raises_command_error(self):
        runner = RecordingRunner(error=FileNotFoundError(2, "No such file", "gitlab-runner"))
        cli = GitLabRunnerCLI(self.config_path, runner=runner)

        with pytest.raises(RunnerCommandError) as exc_info:
            cli.verify()

        assert exc_info.value.command == "verify"
