"""
Registration supervisor for the GitLab runner container.

On every container start the supervisor decides whether the runner
identity still has to be created, registers it exactly once, verifies
it, and finally replaces itself with the long-running ``gitlab-runner
run`` process.
"""

from typing import Any, Callable, Dict, List, NoReturn, Optional, Sequence

import structlog

from ..models.runner import SupervisorPhase, SupervisorSettings, VerificationOutcome
from ..utils.identity import RunnerIdentityRecord
from ..utils.process import hand_off
from ..utils.runner_cli import GitLabRunnerCLI, RunnerCommandError


HandOff = Callable[..., Any]


class SupervisorError(Exception):
    """Base class for errors that must terminate the supervisor."""

    exit_code = 1


class FatalConfigurationError(SupervisorError):
    """Raised when registration settings are missing or unusable."""

    def __init__(self, missing: List[str], invalid: Optional[Dict[str, str]] = None) -> None:
        self.missing = list(missing)
        self.invalid = dict(invalid or {})

        problems = []
        if self.missing:
            problems.append("Missing required environment variable(s): " + ", ".join(self.missing))
        for name, reason in self.invalid.items():
            problems.append(f"Invalid {name}: {reason}")
        super().__init__("; ".join(problems))


class FatalRegistrationError(SupervisorError):
    """Raised when ``gitlab-runner register`` fails."""

    def __init__(self, message: str, returncode: Optional[int] = None) -> None:
        self.returncode = returncode
        super().__init__(message)


class RegistrationSupervisor:
    """
    Idempotent registration followed by a terminal handoff.

    State machine::

        CHECK_REGISTRATION -> [unregistered] REGISTER -> VERIFY -> RUN
        CHECK_REGISTRATION -> [registered]              VERIFY -> RUN

    ``REGISTER`` escapes to termination on missing configuration or a
    failed registration call. ``VERIFY`` always proceeds.
    """

    def __init__(self,
                 settings: SupervisorSettings,
                 cli: Optional[GitLabRunnerCLI] = None,
                 record: Optional[RunnerIdentityRecord] = None,
                 handoff: Optional[HandOff] = None,
                 logger: Any = None) -> None:
        """
        Initialize the supervisor.

        Args:
            settings: Immutable configuration read at startup
            cli: gitlab-runner command wrapper
            record: Persisted identity record
            handoff: Callable replacing the process, ``hand_off`` by default
            logger: Structured logger instance
        """
        self.settings = settings
        self.logger = (logger or structlog.get_logger()).bind(
            component="registration_supervisor",
            config_path=str(settings.config_path)
        )
        self.cli = cli or GitLabRunnerCLI(
            settings.config_path,
            worker=settings.worker,
            logger=self.logger
        )
        self.record = record or RunnerIdentityRecord(
            settings.config_path,
            strict=settings.strict_identity_check,
            logger=self.logger
        )
        self._handoff = handoff or hand_off
        self.phase = SupervisorPhase.CHECK_REGISTRATION

    def _transition(self, phase: SupervisorPhase) -> None:
        self.logger.debug("Supervisor phase change", previous=self.phase.value, phase=phase.value)
        self.phase = phase

    def is_registered(self) -> bool:
        """True iff the persisted record exists and holds a token."""
        return self.record.is_registered()

    def register(self) -> None:
        """
        Register the runner with the fixed executor profile.

        Raises:
            FatalConfigurationError: If the server URL or token is missing or invalid
            FatalRegistrationError: If the registration call fails
        """
        registration = self.settings.registration

        missing = registration.missing_variables()
        invalid = registration.invalid_variables()
        if missing or invalid:
            raise FatalConfigurationError(missing, invalid)

        try:
            returncode = self.cli.register(registration, self.settings.profile)
        except RunnerCommandError as e:
            raise FatalRegistrationError(str(e))

        if returncode != 0:
            raise FatalRegistrationError(
                f"Runner registration failed with exit code {returncode}",
                returncode=returncode
            )

        self.logger.info("Runner registered", url=registration.server_url)

    def verify(self) -> VerificationOutcome:
        """Verify the persisted record; failures are only logged."""
        try:
            returncode = self.cli.verify()
        except RunnerCommandError as e:
            self.logger.warning("Runner verification could not run, continuing", error=str(e))
            return VerificationOutcome.FAILURE

        if returncode != 0:
            self.logger.warning(
                "Runner verification failed, continuing",
                returncode=returncode
            )
            return VerificationOutcome.FAILURE

        self.logger.info("Runner verified")
        return VerificationOutcome.SUCCESS

    def run_command(self) -> Sequence[str]:
        return self.cli.build_run_command()

    def run(self) -> NoReturn:
        """Replace this process with the long-running worker."""
        argv = self.run_command()
        self.logger.info(
            "Handing off to gitlab-runner",
            user=self.settings.worker.user,
            working_directory=self.settings.worker.working_directory
        )
        self._handoff(argv)

    def start(self) -> NoReturn:
        """
        Execute the full supervision sequence.

        Raises:
            SupervisorError: On fatal configuration or registration errors
        """
        self._transition(SupervisorPhase.CHECK_REGISTRATION)

        try:
            if self.is_registered():
                self.logger.info("Runner already registered, skipping registration")
            else:
                self.logger.info("No runner registration found")
                self._transition(SupervisorPhase.REGISTER)
                self.register()
        except SupervisorError as e:
            self._transition(SupervisorPhase.FAILED)
            self.logger.error("Supervisor failed", error=str(e), error_type=type(e).__name__)
            raise

        self._transition(SupervisorPhase.VERIFY)
        self.verify()

        self._transition(SupervisorPhase.RUN)
        self.run()
