"""
Lifecycle management of the docker-compose runner deployment.

Covers the operator tasks around the runner container: validating the
project layout, starting and stopping the services, updating images,
and backing up or restoring configuration together with the
Docker-in-Docker volume.
"""

import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

import structlog
import yaml

from ..models.runner import DeploymentSettings
from ..utils.compose import ComposeClient, ComposeError


class DeploymentError(Exception):
    """Raised when a deployment operation cannot be completed."""
    pass


@dataclass
class ValidationReport:
    """Outcome of validating the deployment directory."""

    created_dirs: List[Path] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


@dataclass
class StatusReport:
    """Service table and recent log lines."""

    services: str
    recent_logs: str


class DeploymentManager:
    """
    Operator-facing wrapper around compose and docker.

    Every public method either completes or raises ``DeploymentError``
    with a message suitable for showing to the operator.
    """

    def __init__(self,
                 settings: DeploymentSettings,
                 compose: Optional[ComposeClient] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 logger: Any = None) -> None:
        self.settings = settings
        self.logger = (logger or structlog.get_logger()).bind(
            component="deployment_manager",
            project_dir=str(settings.project_dir)
        )
        self.compose = compose or ComposeClient(settings, logger=self.logger)
        self._sleep = sleep

    @property
    def project_dir(self) -> Path:
        return self.settings.project_dir

    def _require_docker(self) -> None:
        if not self.compose.docker_available():
            raise DeploymentError("Docker is not running. Please start Docker first.")

    def _require_compose(self) -> None:
        if not self.compose.compose_available():
            command = self.settings.compose_command[0]
            raise DeploymentError(f"{command} is not installed. Please install it first.")

    def validate(self) -> ValidationReport:
        """
        Validate the deployment directory.

        Creates the config and certs directories when missing and checks
        that the compose file declares the runner and DinD services.

        Raises:
            DeploymentError: If the compose file is missing or unparseable
        """
        report = ValidationReport()
        compose_path = self.settings.compose_path

        if not compose_path.is_file():
            raise DeploymentError(f"{self.settings.compose_file} not found")

        for name in (self.settings.config_dir, self.settings.certs_dir):
            directory = self.project_dir / name
            if not directory.is_dir():
                self.logger.warning("Directory not found, creating", directory=name)
                directory.mkdir(parents=True, exist_ok=True)
                report.created_dirs.append(directory)

        try:
            compose_data = yaml.safe_load(compose_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise DeploymentError(f"{self.settings.compose_file} is not valid YAML: {e}")

        services = compose_data.get("services") if isinstance(compose_data, dict) else None
        if not isinstance(services, dict):
            report.warnings.append(f"{self.settings.compose_file} declares no services")
        else:
            for service in (self.settings.runner_service, self.settings.dind_service):
                if service not in services:
                    report.warnings.append(f"Service '{service}' is not declared")

        self.logger.info(
            "Configuration validation completed",
            created=len(report.created_dirs),
            warnings=len(report.warnings)
        )
        return report

    def start(self) -> None:
        """
        Start the services and confirm they came up.

        Raises:
            DeploymentError: If prerequisites are missing or services fail
        """
        self._require_docker()
        self._require_compose()
        self.validate()

        self.logger.info("Starting services")
        try:
            self.compose.up()
        except ComposeError as e:
            raise DeploymentError(f"Failed to start services: {e}")

        self.logger.info("Waiting for services to be ready", seconds=self.settings.startup_wait)
        self._sleep(self.settings.startup_wait)

        try:
            services = self.compose.ps()
        except ComposeError as e:
            raise DeploymentError(f"Failed to query service status: {e}")

        if "Up" not in services:
            try:
                self.compose.logs(capture=False)
            except ComposeError as e:
                self.logger.warning("Could not show service logs", error=str(e))
            raise DeploymentError("Failed to start services")

        self.logger.info("Services started successfully")

    def stop(self) -> None:
        self._require_compose()
        self.logger.info("Stopping services")
        try:
            self.compose.down()
        except ComposeError as e:
            raise DeploymentError(f"Failed to stop services: {e}")
        self.logger.info("Services stopped")

    def restart(self) -> None:
        self.stop()
        self.start()

    def status(self, tail: int = 20) -> StatusReport:
        """Collect the service table and the last ``tail`` log lines."""
        self._require_compose()
        try:
            return StatusReport(
                services=self.compose.ps(),
                recent_logs=self.compose.logs(tail=tail, capture=True)
            )
        except ComposeError as e:
            raise DeploymentError(f"Failed to query service status: {e}")

    def logs(self, service: Optional[str] = None, follow: bool = True) -> None:
        """Stream service logs to the terminal."""
        self._require_compose()
        try:
            self.compose.logs(service=service, follow=follow)
        except ComposeError as e:
            raise DeploymentError(f"Failed to read logs: {e}")

    def update(self) -> None:
        """Pull the latest images and recreate the services."""
        self._require_docker()
        self._require_compose()

        try:
            self.logger.info("Pulling latest images")
            self.compose.pull()
            self.logger.info("Restarting services with new images")
            self.compose.down()
            self.compose.up()
        except ComposeError as e:
            raise DeploymentError(f"Update failed: {e}")

        self.logger.info("Update completed")

    def backup(self, now: Optional[datetime] = None) -> Path:
        """
        Back up configuration and, when present, the DinD volume.

        Args:
            now: Timestamp used for the backup directory name

        Returns:
            Path of the created backup directory
        """
        stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
        backup_dir = self.project_dir / f"{self.settings.backup_prefix}{stamp}"

        config_dir = self.project_dir / self.settings.config_dir
        compose_path = self.settings.compose_path
        if not config_dir.is_dir():
            raise DeploymentError(f"{self.settings.config_dir} directory not found")
        if not compose_path.is_file():
            raise DeploymentError(f"{self.settings.compose_file} not found")

        backup_dir.mkdir(parents=True, exist_ok=False)
        self.logger.info("Creating backup", backup_dir=str(backup_dir))

        shutil.copytree(config_dir, backup_dir / self.settings.config_dir)
        shutil.copy2(compose_path, backup_dir / self.settings.compose_file)

        for name in self.settings.optional_backup_files:
            source = self.project_dir / name
            if source.is_file():
                shutil.copy2(source, backup_dir / name)
            else:
                self.logger.debug("Optional file not present, skipping", file=name)

        if self.compose.volume_exists(self.settings.dind_volume):
            self.logger.info("Backing up Docker data", volume=self.settings.dind_volume)
            try:
                self.compose.archive_volume(
                    self.settings.dind_volume,
                    backup_dir,
                    self.settings.dind_archive_name
                )
            except ComposeError as e:
                raise DeploymentError(f"Failed to back up Docker data: {e}")

        self.logger.info("Backup completed", backup_dir=str(backup_dir))
        return backup_dir

    def restore(self, backup_dir: Path) -> None:
        """
        Restore configuration and DinD data from a backup directory.

        Services are stopped first; they are not restarted afterwards.
        """
        backup_dir = Path(backup_dir)
        if not backup_dir.is_absolute():
            backup_dir = self.project_dir / backup_dir

        if not backup_dir.is_dir():
            raise DeploymentError(f"Backup directory {backup_dir} not found")

        self.logger.info("Restoring configuration", backup_dir=str(backup_dir))
        self.stop()

        config_backup = backup_dir / self.settings.config_dir
        if config_backup.is_dir():
            self.logger.info("Restoring config files")
            shutil.copytree(
                config_backup,
                self.project_dir / self.settings.config_dir,
                dirs_exist_ok=True
            )

        for name in (self.settings.compose_file, *self.settings.optional_backup_files):
            source = backup_dir / name
            if source.is_file():
                self.logger.info("Restoring file", file=name)
                shutil.copy2(source, self.project_dir / name)

        if (backup_dir / self.settings.dind_archive_name).is_file():
            self.logger.info("Restoring Docker data", volume=self.settings.dind_volume)
            try:
                self.compose.restore_volume(
                    self.settings.dind_volume,
                    backup_dir,
                    self.settings.dind_archive_name
                )
            except ComposeError as e:
                raise DeploymentError(f"Failed to restore Docker data: {e}")

        self.logger.info("Restore completed")

    def backups(self) -> List[Path]:
        """Existing backup directories, oldest first."""
        return sorted(
            path for path in self.project_dir.glob(f"{self.settings.backup_prefix}*")
            if path.is_dir()
        )

    def cleanup(self, confirmed: bool) -> bool:
        """
        Remove containers, volumes, images and backups.

        Returns:
            False if the operator did not confirm, True once cleaned up
        """
        if not confirmed:
            self.logger.info("Cleanup cancelled")
            return False

        self._require_compose()

        self.logger.info("Stopping and removing services")
        try:
            self.compose.down(volumes=True)
        except ComposeError as e:
            raise DeploymentError(f"Failed to remove services: {e}")

        self.logger.info("Removing images", images=list(self.settings.images))
        if not self.compose.remove_images(self.settings.images):
            self.logger.warning("Some images could not be removed")

        for backup_dir in self.backups():
            shutil.rmtree(backup_dir)

        self.logger.info("Cleanup completed")
        return True
