"""
Command-line interface for the GitLab Docker-in-Docker runner.

``entrypoint`` is the container entrypoint: it registers the runner once
and hands the process over to ``gitlab-runner run``. The remaining
commands manage the docker-compose deployment from the host.
"""

import asyncio
import json
import logging
import shlex
import sys
from pathlib import Path
from typing import Optional

import structlog
import typer
import yaml
from pydantic import SecretStr, ValidationError

from .controllers.deployment import DeploymentError, DeploymentManager
from .controllers.supervisor import RegistrationSupervisor, SupervisorError
from .models.runner import (
    DEFAULT_CONFIG_PATH,
    DeploymentSettings,
    ExecutorProfile,
    RegistrationSettings,
    SupervisorSettings,
    WorkerSettings,
)
from .utils.gitlab_client import GitLabProbe, GitLabProbeError
from .utils.security import ProfileAuditor

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

app = typer.Typer(
    name="gitlab-dind-runner",
    help="GitLab Docker-in-Docker runner entrypoint and deployment manager",
    no_args_is_help=True
)

logger = structlog.get_logger()


def setup_logging(log_level: str, log_format: str = "json") -> None:
    """Setup structured logging with specified level and format."""
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        typer.echo(f"Error: Unknown log level: {log_level}", err=True)
        raise typer.Exit(1)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stderr,
        force=True
    )

    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _report_validation_error(title: str, error: ValidationError) -> None:
    typer.echo(f"{title}:", err=True)
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        typer.echo(f"  {location}: {item['msg']}", err=True)


def load_executor_profile(profile_path: Optional[str]) -> ExecutorProfile:
    """
    Load and validate the executor profile.

    Args:
        profile_path: Path to a YAML or JSON profile, None for defaults

    Returns:
        Validated executor profile

    Raises:
        typer.Exit: If the profile is missing or invalid
    """
    if not profile_path:
        return ExecutorProfile()

    profile_file = Path(profile_path)
    if not profile_file.is_file():
        typer.echo(f"Error: Profile file not found: {profile_path}", err=True)
        raise typer.Exit(1)

    try:
        with open(profile_file, "r") as f:
            if profile_path.endswith(".json"):
                profile_data = json.load(f)
            else:
                profile_data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        typer.echo(f"Error loading profile: {e}", err=True)
        raise typer.Exit(1)

    if not isinstance(profile_data, dict):
        typer.echo(f"Error: Profile must be a mapping: {profile_path}", err=True)
        raise typer.Exit(1)

    try:
        return ExecutorProfile(**profile_data)
    except ValidationError as e:
        _report_validation_error("Profile validation error", e)
        raise typer.Exit(1)


def _deployment_settings(project_dir: str, compose_command: str) -> DeploymentSettings:
    try:
        return DeploymentSettings(
            project_dir=Path(project_dir),
            compose_command=tuple(shlex.split(compose_command))
        )
    except ValidationError as e:
        _report_validation_error("Deployment configuration error", e)
        raise typer.Exit(1)


def _project_dir_option() -> typer.Option:
    return typer.Option(
        ".",
        "--project-dir", "-d",
        help="Directory containing docker-compose.yml",
        envvar="RUNNER_PROJECT_DIR"
    )


def _compose_command_option() -> typer.Option:
    return typer.Option(
        "docker-compose",
        "--compose-command",
        help="Command used to invoke compose (e.g. 'docker compose')",
        envvar="COMPOSE_COMMAND"
    )


def _header(title: str) -> None:
    typer.secho(f"=== {title} ===", fg=typer.colors.BLUE)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        "INFO",
        "--log-level", "-l",
        help="Logging level",
        envvar="LOG_LEVEL"
    ),
    log_format: str = typer.Option(
        "json",
        "--log-format",
        help="Log format (json or console)",
        envvar="LOG_FORMAT"
    )
) -> None:
    """GitLab Docker-in-Docker runner tooling."""
    setup_logging(log_level, log_format)


@app.command()
def entrypoint(
    url: str = typer.Option(
        "",
        "--url",
        help="GitLab server URL",
        envvar="CI_SERVER_URL",
        show_default=False
    ),
    registration_token: str = typer.Option(
        "",
        "--registration-token",
        help="Runner registration token",
        envvar="REGISTRATION_TOKEN",
        show_default=False
    ),
    config_path: str = typer.Option(
        str(DEFAULT_CONFIG_PATH),
        "--config-path",
        help="Runner configuration file",
        envvar="RUNNER_CONFIG_PATH"
    ),
    profile_file: Optional[str] = typer.Option(
        None,
        "--profile-file",
        help="YAML or JSON executor profile overriding the defaults",
        envvar="RUNNER_PROFILE_FILE"
    ),
    strict_identity_check: bool = typer.Option(
        False,
        "--strict-identity-check",
        help="Parse config.toml instead of matching the token substring",
        envvar="RUNNER_STRICT_IDENTITY_CHECK"
    ),
    user: str = typer.Option(
        "gitlab-runner",
        "--user",
        help="User the runner executes as",
        envvar="RUNNER_USER"
    ),
    working_directory: str = typer.Option(
        "/home/gitlab-runner",
        "--working-directory",
        help="Runner working directory",
        envvar="RUNNER_WORKING_DIRECTORY"
    )
) -> None:
    """
    Register the runner if needed, then become gitlab-runner.

    Registration happens at most once per configuration store. On
    success this process is replaced by ``gitlab-runner run``.
    """
    profile = load_executor_profile(profile_file)

    try:
        settings = SupervisorSettings(
            config_path=Path(config_path),
            strict_identity_check=strict_identity_check,
            registration=RegistrationSettings(
                server_url=url,
                registration_token=SecretStr(registration_token)
            ),
            profile=profile,
            worker=WorkerSettings(user=user, working_directory=working_directory)
        )
    except ValidationError as e:
        _report_validation_error("Configuration validation error", e)
        raise typer.Exit(1)

    supervisor = RegistrationSupervisor(settings)

    try:
        supervisor.start()
    except SupervisorError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(e.exit_code)


@app.command()
def validate(
    project_dir: str = _project_dir_option(),
    compose_command: str = _compose_command_option(),
    profile_file: Optional[str] = typer.Option(
        None,
        "--profile-file",
        help="YAML or JSON executor profile to audit",
        envvar="RUNNER_PROFILE_FILE"
    ),
    url: str = typer.Option(
        "",
        "--url",
        help="GitLab server URL to audit",
        envvar="CI_SERVER_URL",
        show_default=False
    ),
    check_server: bool = typer.Option(
        False,
        "--check-server",
        help="Contact the GitLab server to confirm it is reachable"
    )
) -> None:
    """
    Validate the deployment directory and executor profile.
    """
    _header("Validating Configuration")
    manager = DeploymentManager(_deployment_settings(project_dir, compose_command))

    try:
        report = manager.validate()
    except DeploymentError as e:
        typer.echo(f"❌ Validation failed: {e}", err=True)
        raise typer.Exit(1)

    for directory in report.created_dirs:
        typer.echo(f"⚠️  {directory.name} directory not found, created")

    profile = load_executor_profile(profile_file)
    auditor = ProfileAuditor()
    warnings = list(report.warnings)
    warnings.extend(auditor.audit_executor_profile(profile))
    warnings.extend(auditor.audit_server_url(url))

    if check_server:
        if not url:
            typer.echo("❌ --check-server requires CI_SERVER_URL or --url", err=True)
            raise typer.Exit(1)
        try:
            info = asyncio.run(GitLabProbe(url).check_connectivity())
        except GitLabProbeError as e:
            typer.echo(f"❌ GitLab server unreachable: {e}", err=True)
            raise typer.Exit(1)
        typer.echo(f"🌐 GitLab server reachable (HTTP {info['status_code']})")

    if warnings:
        typer.echo("⚠️  Warnings:", err=True)
        for warning in warnings:
            typer.echo(f"  - {warning}", err=True)

    typer.echo("✅ Configuration validation completed")
    typer.echo(f"🔧 Job image: {profile.image}")
    typer.echo(f"📦 Volumes: {len(profile.volumes)}")


@app.command()
def start(
    project_dir: str = _project_dir_option(),
    compose_command: str = _compose_command_option()
) -> None:
    """Start the runner services."""
    _header("Starting GitLab Runner Services")
    settings = _deployment_settings(project_dir, compose_command)
    manager = DeploymentManager(settings)

    try:
        manager.start()
    except DeploymentError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo("✅ Services started successfully")
    typer.echo(f"📄 Runner logs: gitlab-dind-runner logs {settings.runner_service}")
    typer.echo(f"📄 DinD logs: gitlab-dind-runner logs {settings.dind_service}")


@app.command()
def stop(
    project_dir: str = _project_dir_option(),
    compose_command: str = _compose_command_option()
) -> None:
    """Stop the runner services."""
    _header("Stopping GitLab Runner Services")
    manager = DeploymentManager(_deployment_settings(project_dir, compose_command))

    try:
        manager.stop()
    except DeploymentError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo("🛑 Services stopped")


@app.command()
def restart(
    project_dir: str = _project_dir_option(),
    compose_command: str = _compose_command_option()
) -> None:
    """Restart the runner services."""
    _header("Restarting GitLab Runner Services")
    manager = DeploymentManager(_deployment_settings(project_dir, compose_command))

    try:
        manager.restart()
    except DeploymentError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo("✅ Services restarted")


@app.command()
def status(
    project_dir: str = _project_dir_option(),
    compose_command: str = _compose_command_option(),
    tail: int = typer.Option(
        20,
        "--tail",
        help="Number of recent log lines to show"
    )
) -> None:
    """Show service status and recent logs."""
    _header("GitLab Runner Status")
    manager = DeploymentManager(_deployment_settings(project_dir, compose_command))

    try:
        report = manager.status(tail=tail)
    except DeploymentError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo("Service Status:")
    typer.echo(report.services)
    typer.echo("")
    typer.echo("Recent Logs:")
    typer.echo(report.recent_logs)


@app.command()
def logs(
    service: Optional[str] = typer.Argument(
        None,
        help="Service to show (gitlab-runner or gitlab-dind)"
    ),
    project_dir: str = _project_dir_option(),
    compose_command: str = _compose_command_option(),
    follow: bool = typer.Option(
        True,
        "--follow/--no-follow",
        help="Keep streaming new log lines"
    )
) -> None:
    """Show service logs."""
    _header("GitLab Runner Logs")
    manager = DeploymentManager(_deployment_settings(project_dir, compose_command))

    try:
        manager.logs(service=service, follow=follow)
    except DeploymentError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)


@app.command()
def update(
    project_dir: str = _project_dir_option(),
    compose_command: str = _compose_command_option()
) -> None:
    """Pull the latest images and recreate the services."""
    _header("Updating GitLab Runner Services")
    manager = DeploymentManager(_deployment_settings(project_dir, compose_command))

    try:
        manager.update()
    except DeploymentError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo("✅ Update completed")


@app.command()
def backup(
    project_dir: str = _project_dir_option(),
    compose_command: str = _compose_command_option()
) -> None:
    """Back up configuration and Docker data."""
    _header("Backing Up Configuration")
    manager = DeploymentManager(_deployment_settings(project_dir, compose_command))

    try:
        backup_dir = manager.backup()
    except (DeploymentError, OSError) as e:
        typer.echo(f"❌ Backup failed: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"✅ Backup completed: {backup_dir}")


@app.command()
def restore(
    backup_dir: Optional[str] = typer.Argument(
        None,
        help="Backup directory created by the backup command"
    ),
    project_dir: str = _project_dir_option(),
    compose_command: str = _compose_command_option()
) -> None:
    """Restore configuration and Docker data from a backup."""
    if not backup_dir:
        typer.echo("❌ Please specify backup directory: gitlab-dind-runner restore <backup-dir>", err=True)
        raise typer.Exit(1)

    _header(f"Restoring Configuration from {backup_dir}")
    manager = DeploymentManager(_deployment_settings(project_dir, compose_command))

    try:
        manager.restore(Path(backup_dir))
    except (DeploymentError, OSError) as e:
        typer.echo(f"❌ Restore failed: {e}", err=True)
        raise typer.Exit(1)

    typer.echo("✅ Restore completed")


@app.command()
def cleanup(
    project_dir: str = _project_dir_option(),
    compose_command: str = _compose_command_option(),
    yes: bool = typer.Option(
        False,
        "--yes", "-y",
        help="Do not ask for confirmation"
    )
) -> None:
    """Remove all containers, volumes, images and backups."""
    _header("Cleaning Up GitLab Runner")
    manager = DeploymentManager(_deployment_settings(project_dir, compose_command))

    confirmed = yes or typer.confirm(
        "This will remove all data and containers. Are you sure?",
        default=False
    )

    try:
        removed = manager.cleanup(confirmed)
    except (DeploymentError, OSError) as e:
        typer.echo(f"❌ Cleanup failed: {e}", err=True)
        raise typer.Exit(1)

    if removed:
        typer.echo("✅ Cleanup completed")
    else:
        typer.echo("Cleanup cancelled")


@app.command()
def generate_profile(
    output: str = typer.Option(
        "runner-profile.yaml",
        "--output", "-o",
        help="Output profile file path"
    ),
    format: str = typer.Option(
        "yaml",
        "--format", "-f",
        help="Profile format (yaml or json)"
    )
) -> None:
    """
    Generate an executor profile file populated with the defaults.
    """
    sample_profile = ExecutorProfile().model_dump(mode="json")

    try:
        with open(Path(output), "w") as f:
            if format.lower() == "json":
                json.dump(sample_profile, f, indent=2)
            else:
                yaml.safe_dump(sample_profile, f, default_flow_style=False, indent=2)
    except OSError as e:
        typer.echo(f"❌ Failed to generate profile: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"✅ Sample profile generated: {output}")
    typer.echo("🔧 Point RUNNER_PROFILE_FILE at it to override the defaults")


def main() -> None:
    """Main entry point for the CLI application."""
    app()


if __name__ == "__main__":
    main()
