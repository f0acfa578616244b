"""
GitLab runner models for the Docker-in-Docker runner deployment.

This module defines the immutable configuration models read once at
startup: the executor profile applied to every job, registration
credentials, the worker process identity and the compose deployment
layout.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


DEFAULT_CONFIG_PATH = Path("/etc/gitlab-runner/config.toml")

SERVER_URL_VARIABLE = "CI_SERVER_URL"
REGISTRATION_TOKEN_VARIABLE = "REGISTRATION_TOKEN"

_DOCKER_MEMORY_PATTERN = re.compile(r"^-?\d+[bkmgBKMG]?$")


class SupervisorPhase(str, Enum):
    """
    Registration supervisor lifecycle phases.

    Tracks the step the supervisor is executing. ``RUN`` is terminal:
    once reached the supervisor process has been replaced by the worker.
    """

    CHECK_REGISTRATION = "check_registration"
    REGISTER = "register"
    VERIFY = "verify"
    RUN = "run"
    FAILED = "failed"


class VerificationOutcome(str, Enum):
    """Result of ``gitlab-runner verify`` against the persisted record."""

    SUCCESS = "success"
    FAILURE = "failure"


class PullPolicy(str, Enum):
    """Docker executor image pull policies."""

    ALWAYS = "always"
    NEVER = "never"
    IF_NOT_PRESENT = "if-not-present"


class ExecutorProfile(BaseModel):
    """
    Docker executor profile applied to every job the runner executes.

    The profile is declarative and static per deployment. Jobs run
    privileged against the Docker-in-Docker daemon, with the client
    certificates, a shared cache and the engine socket mounted in.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        use_enum_values=True,
        validate_default=True
    )

    executor: str = Field(
        default="docker",
        description="gitlab-runner executor backend"
    )
    image: str = Field(
        default="docker:24.0.5",
        description="Pinned default job image"
    )
    privileged: bool = Field(
        default=True,
        description="Run job containers in privileged mode"
    )
    description: str = Field(
        default="Auto-registered runner",
        description="Runner description shown in GitLab"
    )
    volumes: Tuple[str, ...] = Field(
        default=(
            "/certs/client",
            "/cache",
            "/var/run/docker.sock:/var/run/docker.sock",
        ),
        description="Volume bindings for job containers"
    )
    network_mode: str = Field(
        default="gitlab-runner-network",
        description="Docker network job containers join"
    )
    memory: str = Field(
        default="2g",
        description="Memory ceiling per job container"
    )
    memory_swap: str = Field(
        default="2g",
        description="Memory plus swap ceiling per job container"
    )
    cpus: str = Field(
        default="2",
        description="CPU ceiling per job container"
    )
    pull_policy: PullPolicy = Field(
        default=PullPolicy.IF_NOT_PRESENT,
        description="When to pull job images"
    )
    wait_for_services_timeout: int = Field(
        default=30,
        ge=-1,
        description="Seconds to wait for job services, -1 disables waiting"
    )
    tags: Tuple[str, ...] = Field(
        default=(),
        description="GitLab runner tags for job routing"
    )

    @field_validator("image")
    @classmethod
    def validate_image_pinned(cls, v: str) -> str:
        """Require an explicit, non-latest image tag or digest."""
        if "@" in v:
            return v
        name = v.rsplit("/", 1)[-1]
        if ":" not in name:
            raise ValueError("Image must be pinned to an explicit tag")
        if name.endswith(":latest"):
            raise ValueError("Using 'latest' tag is not allowed for the job image")
        return v

    @field_validator("memory", "memory_swap")
    @classmethod
    def validate_memory_format(cls, v: str) -> str:
        """Validate docker memory format (e.g. '512m', '2g')."""
        v = v.strip()
        if not _DOCKER_MEMORY_PATTERN.match(v):
            raise ValueError("Memory must be an integer with optional b, k, m or g suffix")
        return v

    @field_validator("cpus")
    @classmethod
    def validate_cpus(cls, v: str) -> str:
        """Validate CPU ceiling is a positive decimal."""
        v = v.strip()
        try:
            value = float(v)
        except ValueError:
            raise ValueError("cpus must be a decimal number (e.g. '2' or '1.5')")
        if value <= 0:
            raise ValueError("cpus must be positive")
        return v

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("description must not be empty")
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Strip tags and drop empty entries."""
        return tuple(tag.strip() for tag in v if tag.strip())


class RegistrationSettings(BaseModel):
    """
    Control-plane credentials used for the one-time registration.

    Values may be empty at construction time: whether they are required
    depends on whether the runner still needs to register, which is only
    known once the persisted record has been inspected.
    """

    model_config = ConfigDict(frozen=True)

    server_url: str = Field(
        default="",
        description="GitLab server URL"
    )
    registration_token: SecretStr = Field(
        default=SecretStr(""),
        description="GitLab runner registration token"
    )

    @field_validator("server_url")
    @classmethod
    def normalise_server_url(cls, v: str) -> str:
        """Strip whitespace and trailing slashes; the scheme is checked at registration."""
        return v.strip().rstrip("/")

    @field_validator("registration_token")
    @classmethod
    def strip_registration_token(cls, v: SecretStr) -> SecretStr:
        return SecretStr(v.get_secret_value().strip())

    def missing_variables(self) -> List[str]:
        """Names of the required environment variables that are empty."""
        missing = []
        if not self.server_url:
            missing.append(SERVER_URL_VARIABLE)
        if not self.registration_token.get_secret_value():
            missing.append(REGISTRATION_TOKEN_VARIABLE)
        return missing

    def invalid_variables(self) -> Dict[str, str]:
        """Set variables that cannot be used to register, mapped to the reason."""
        invalid = {}
        if self.server_url and not self.server_url.startswith(("https://", "http://")):
            invalid[SERVER_URL_VARIABLE] = "GitLab URL must include protocol (https:// or http://)"
        return invalid


class WorkerSettings(BaseModel):
    """Identity of the long-running ``gitlab-runner run`` process."""

    model_config = ConfigDict(frozen=True)

    binary: str = Field(
        default="gitlab-runner",
        description="gitlab-runner executable"
    )
    user: str = Field(
        default="gitlab-runner",
        description="User the worker runs jobs as"
    )
    working_directory: str = Field(
        default="/home/gitlab-runner",
        description="Worker working directory"
    )


class SupervisorSettings(BaseModel):
    """
    Registration supervisor configuration.

    Aggregates everything the supervisor reads from its environment so
    that no component performs ambient environment lookups.
    """

    model_config = ConfigDict(frozen=True)

    config_path: Path = Field(
        default=DEFAULT_CONFIG_PATH,
        description="Path of the persisted runner configuration"
    )
    strict_identity_check: bool = Field(
        default=False,
        description="Parse the configuration as TOML instead of a substring match"
    )
    registration: RegistrationSettings = Field(
        default_factory=RegistrationSettings,
        description="Registration credentials"
    )
    profile: ExecutorProfile = Field(
        default_factory=ExecutorProfile,
        description="Executor profile used at registration"
    )
    worker: WorkerSettings = Field(
        default_factory=WorkerSettings,
        description="Worker process identity"
    )


class DeploymentSettings(BaseModel):
    """
    Layout of the docker-compose deployment managed by the operator CLI.
    """

    model_config = ConfigDict(frozen=True)

    project_dir: Path = Field(
        default=Path("."),
        description="Directory containing the compose project"
    )
    compose_command: Tuple[str, ...] = Field(
        default=("docker-compose",),
        description="Command used to invoke compose"
    )
    compose_file: str = Field(
        default="docker-compose.yml",
        description="Compose file name inside the project directory"
    )
    runner_service: str = Field(
        default="gitlab-runner",
        description="Compose service running gitlab-runner"
    )
    dind_service: str = Field(
        default="gitlab-dind",
        description="Compose service running the Docker-in-Docker daemon"
    )
    config_dir: str = Field(
        default="config",
        description="Runner configuration directory"
    )
    certs_dir: str = Field(
        default="certs",
        description="TLS client certificate directory"
    )
    dind_volume: str = Field(
        default="runnerz_dind-data",
        description="Docker volume holding the DinD daemon data"
    )
    archive_image: str = Field(
        default="alpine",
        description="Image used to archive and restore volume data"
    )
    images: Tuple[str, ...] = Field(
        default=("gitlab/gitlab-runner:latest", "docker:24.0.5-dind"),
        description="Images removed by cleanup"
    )
    backup_prefix: str = Field(
        default="backup-",
        description="Prefix of backup directories"
    )
    optional_backup_files: Tuple[str, ...] = Field(
        default=("entrypoint.sh", "README.md"),
        description="Files copied into backups when present"
    )
    startup_wait: float = Field(
        default=10.0,
        ge=0,
        description="Seconds to wait before checking services after start"
    )

    @field_validator("compose_command")
    @classmethod
    def validate_compose_command(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v:
            raise ValueError("compose_command must not be empty")
        return v

    @property
    def compose_path(self) -> Path:
        return self.project_dir / self.compose_file

    @property
    def dind_archive_name(self) -> str:
        return "dind-data.tar.gz"
