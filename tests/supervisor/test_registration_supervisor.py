"""
Registration supervisor tests.

Exercise the registration state machine against a fake gitlab-runner
binary and a recording handoff, covering idempotence, fatal
configuration errors and lenient verification.
"""

import subprocess

import pytest

from dind_runner.controllers.supervisor import (
    FatalConfigurationError,
    FatalRegistrationError,
    RegistrationSupervisor,
)
from dind_runner.models.runner import (
    RegistrationSettings,
    SupervisorPhase,
    SupervisorSettings,
    VerificationOutcome,
)
from dind_runner.utils.runner_cli import GitLabRunnerCLI


REGISTERED_CONFIG = """concurrent = 1

[[runners]]
  name = "Auto-registered runner"
  url = "https://ci.example.com"
  token = "glrt-abcdef"
  executor = "docker"
"""


class FakeGitLabRunner:
    """Stands in for the gitlab-runner binary."""

    def __init__(self, register_rc=0, verify_rc=0, missing=False):
        self.register_rc = register_rc
        self.verify_rc = verify_rc
        self.missing = missing
        self.calls = []

    def __call__(self, argv, **kwargs):
        if self.missing:
            raise FileNotFoundError(2, "No such file or directory", argv[0])

        self.calls.append(list(argv))
        command = argv[1]

        if command == "register":
            if self.register_rc == 0:
                config_path = argv[argv.index("--config") + 1]
                with open(config_path, "w") as f:
                    f.write(REGISTERED_CONFIG)
            return subprocess.CompletedProcess(argv, self.register_rc)

        if command == "verify":
            return subprocess.CompletedProcess(argv, self.verify_rc)

        raise AssertionError(f"Unexpected command: {argv}")

    def commands(self):
        return [call[1] for call in self.calls]

    def register_calls(self):
        return [call for call in self.calls if call[1] == "register"]


class RecordingHandoff:
    def __init__(self):
        self.calls = []

    def __call__(self, argv, cwd=None):
        self.calls.append(list(argv))


def make_settings(config_path, url="https://ci.example.com", token="abc123"):
    return SupervisorSettings(
        config_path=config_path,
        registration=RegistrationSettings(server_url=url, registration_token=token),
    )


def make_supervisor(settings, runner, handoff):
    cli = GitLabRunnerCLI(settings.config_path, worker=settings.worker, runner=runner)
    return RegistrationSupervisor(settings, cli=cli, handoff=handoff)


class TestRegistrationSupervisor:
    """Test the registration and handoff sequence."""

    def setup_method(self):
        """Set up test fixtures."""
        self.runner = FakeGitLabRunner()
        self.handoff = RecordingHandoff()

    def test_unregistered_runner_registers_once_then_runs(self, tmp_path):
        """No record: register with the given URL and token, verify, hand off."""
        config_path = tmp_path / "config.toml"
        supervisor = make_supervisor(make_settings(config_path), self.runner, self.handoff)

        supervisor.start()

        assert self.runner.commands() == ["register", "verify"]
        register = self.runner.register_calls()[0]
        assert register[register.index("--url") + 1] == "https://ci.example.com"
        assert register[register.index("--registration-token") + 1] == "abc123"
        assert "--non-interactive" in register
        assert "--docker-privileged" in register
        assert register[register.index("--executor") + 1] == "docker"
        assert register[register.index("--docker-image") + 1] == "docker:24.0.5"

        assert len(self.handoff.calls) == 1
        assert self.handoff.calls[0][:2] == ["gitlab-runner", "run"]
        assert supervisor.phase == SupervisorPhase.RUN

    def test_registration_uses_fixed_capability_profile(self, tmp_path):
        """The full executor profile is passed on registration."""
        supervisor = make_supervisor(
            make_settings(tmp_path / "config.toml"), self.runner, self.handoff
        )

        supervisor.start()

        register = self.runner.register_calls()[0]
        volumes = [
            register[i + 1] for i, arg in enumerate(register) if arg == "--docker-volumes"
        ]
        assert volumes == [
            "/certs/client",
            "/cache",
            "/var/run/docker.sock:/var/run/docker.sock",
        ]
        for flag in (
            "--docker-network-mode",
            "--docker-memory",
            "--docker-memory-swap",
            "--docker-cpus",
            "--docker-pull-policy",
            "--docker-wait-for-services-timeout",
            "--description",
        ):
            assert flag in register, f"Missing {flag}"

    def test_registered_runner_skips_registration(self, tmp_path):
        """Record with a token: verify and hand off without registering."""
        config_path = tmp_path / "config.toml"
        config_path.write_text(REGISTERED_CONFIG)
        supervisor = make_supervisor(make_settings(config_path), self.runner, self.handoff)

        supervisor.start()

        assert self.runner.commands() == ["verify"]
        assert len(self.handoff.calls) == 1

    def test_repeated_starts_never_register_again(self, tmp_path):
        """Idempotence across restarts once the record exists."""
        config_path = tmp_path / "config.toml"
        settings = make_settings(config_path)

        for _ in range(3):
            make_supervisor(settings, self.runner, self.handoff).start()

        assert len(self.runner.register_calls()) == 1
        assert self.runner.commands() == ["register", "verify", "verify", "verify"]
        assert len(self.handoff.calls) == 3

    def test_record_without_token_is_treated_as_unregistered(self, tmp_path):
        """A malformed record triggers registration."""
        config_path = tmp_path / "config.toml"
        config_path.write_text("concurrent = 1\ncheck_interval = 0\n")
        supervisor = make_supervisor(make_settings(config_path), self.runner, self.handoff)

        supervisor.start()

        assert len(self.runner.register_calls()) == 1

    def test_empty_record_is_treated_as_unregistered(self, tmp_path):
        config_path = tmp_path / "config.toml"
        config_path.write_text("")
        supervisor = make_supervisor(make_settings(config_path), self.runner, self.handoff)

        assert not supervisor.is_registered()

    def test_missing_server_url_is_fatal_before_any_call(self, tmp_path):
        """Unset server URL terminates before any external call."""
        supervisor = make_supervisor(
            make_settings(tmp_path / "config.toml", url=""), self.runner, self.handoff
        )

        with pytest.raises(FatalConfigurationError) as exc_info:
            supervisor.start()

        assert exc_info.value.missing == ["CI_SERVER_URL"]
        assert exc_info.value.exit_code == 1
        assert "CI_SERVER_URL" in str(exc_info.value)
        assert self.runner.calls == []
        assert self.handoff.calls == []
        assert supervisor.phase == SupervisorPhase.FAILED

    def test_missing_token_is_fatal_before_any_call(self, tmp_path):
        """Unset registration token terminates before any external call."""
        supervisor = make_supervisor(
            make_settings(tmp_path / "config.toml", token=""), self.runner, self.handoff
        )

        with pytest.raises(FatalConfigurationError) as exc_info:
            supervisor.start()

        assert exc_info.value.missing == ["REGISTRATION_TOKEN"]
        assert self.runner.calls == []
        assert self.handoff.calls == []

    def test_both_variables_missing_are_reported(self, tmp_path):
        supervisor = make_supervisor(
            make_settings(tmp_path / "config.toml", url="", token=""),
            self.runner,
            self.handoff,
        )

        with pytest.raises(FatalConfigurationError) as exc_info:
            supervisor.register()

        assert exc_info.value.missing == ["CI_SERVER_URL", "REGISTRATION_TOKEN"]

    def test_missing_configuration_is_irrelevant_when_registered(self, tmp_path):
        """Credentials are only required when registration is needed."""
        config_path = tmp_path / "config.toml"
        config_path.write_text(REGISTERED_CONFIG)
        supervisor = make_supervisor(
            make_settings(config_path, url="", token=""), self.runner, self.handoff
        )

        supervisor.start()

        assert self.runner.commands() == ["verify"]
        assert len(self.handoff.calls) == 1

    def test_server_url_without_scheme_is_fatal_when_registering(self, tmp_path):
        supervisor = make_supervisor(
            make_settings(tmp_path / "config.toml", url="ci.example.com"), self.runner, self.handoff
        )

        with pytest.raises(FatalConfigurationError) as exc_info:
            supervisor.start()

        assert exc_info.value.missing == []
        assert "CI_SERVER_URL" in exc_info.value.invalid
        assert "CI_SERVER_URL" in str(exc_info.value)
        assert self.runner.calls == []
        assert self.handoff.calls == []

    def test_server_url_without_scheme_is_irrelevant_when_registered(self, tmp_path):
        config_path = tmp_path / "config.toml"
        config_path.write_text(REGISTERED_CONFIG)
        supervisor = make_supervisor(
            make_settings(config_path, url="ci.example.com", token=""), self.runner, self.handoff
        )

        supervisor.start()

        assert self.runner.commands() == ["verify"]
        assert len(self.handoff.calls) == 1

    def test_failed_registration_is_fatal(self, tmp_path):
        """Non-zero registration exit terminates without verify or handoff."""
        runner = FakeGitLabRunner(register_rc=1)
        supervisor = make_supervisor(make_settings(tmp_path / "config.toml"), runner, self.handoff)

        with pytest.raises(FatalRegistrationError) as exc_info:
            supervisor.start()

        assert exc_info.value.returncode == 1
        assert exc_info.value.exit_code == 1
        assert runner.commands() == ["register"]
        assert self.handoff.calls == []
        assert not (tmp_path / "config.toml").exists()

    def test_missing_binary_during_registration_is_fatal(self, tmp_path):
        runner = FakeGitLabRunner(missing=True)
        supervisor = make_supervisor(make_settings(tmp_path / "config.toml"), runner, self.handoff)

        with pytest.raises(FatalRegistrationError):
            supervisor.start()

        assert self.handoff.calls == []

    def test_failed_verification_still_hands_off(self, tmp_path):
        """Verification failure is logged and the worker still starts."""
        config_path = tmp_path / "config.toml"
        config_path.write_text(REGISTERED_CONFIG)
        runner = FakeGitLabRunner(verify_rc=1)
        supervisor = make_supervisor(make_settings(config_path), runner, self.handoff)

        assert supervisor.verify() == VerificationOutcome.FAILURE

        supervisor.start()

        assert len(self.handoff.calls) == 1

    def test_verification_without_binary_is_a_failure_outcome(self, tmp_path):
        runner = FakeGitLabRunner(missing=True)
        supervisor = make_supervisor(make_settings(tmp_path / "config.toml"), runner, self.handoff)

        assert supervisor.verify() == VerificationOutcome.FAILURE

    def test_successful_verification(self, tmp_path):
        supervisor = make_supervisor(
            make_settings(tmp_path / "config.toml"), self.runner, self.handoff
        )

        assert supervisor.verify() == VerificationOutcome.SUCCESS

    def test_handoff_uses_worker_identity(self, tmp_path):
        """The worker runs with the fixed user and working directory."""
        config_path = tmp_path / "config.toml"
        config_path.write_text(REGISTERED_CONFIG)
        supervisor = make_supervisor(make_settings(config_path), self.runner, self.handoff)

        supervisor.run()

        assert self.handoff.calls == [[
            "gitlab-runner", "run",
            "--user=gitlab-runner",
            "--working-directory=/home/gitlab-runner",
            "--config", str(config_path),
        ]]

    def test_strict_identity_check_ignores_token_in_comments(self, tmp_path):
        """With strict checking a commented token does not count."""
        config_path = tmp_path / "config.toml"
        config_path.write_text("# token goes here after registration\nconcurrent = 1\n")
        settings = SupervisorSettings(
            config_path=config_path,
            strict_identity_check=True,
            registration=RegistrationSettings(
                server_url="https://ci.example.com",
                registration_token="abc123",
            ),
        )
        supervisor = make_supervisor(settings, self.runner, self.handoff)

        supervisor.start()

        assert len(self.runner.register_calls()) == 1
