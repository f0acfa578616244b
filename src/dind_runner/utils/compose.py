"""
docker and docker-compose invocation for the deployment manager.
"""

import shutil
import subprocess
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import structlog

from ..models.runner import DeploymentSettings


CommandRunner = Callable[..., subprocess.CompletedProcess]


class ComposeError(Exception):
    """Raised when a docker or compose command fails."""

    def __init__(self, argv: Sequence[str], returncode: int, output: str = "") -> None:
        message = f"Command failed with exit code {returncode}: {' '.join(argv)}"
        if output:
            message = f"{message}\n{output.strip()}"
        super().__init__(message)
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output


class ComposeClient:
    """
    Runs docker and compose commands inside the project directory.

    ``capture=True`` collects stdout for callers that need to inspect it;
    otherwise output streams to the operator's terminal.
    """

    def __init__(self,
                 settings: DeploymentSettings,
                 runner: Optional[CommandRunner] = None,
                 which: Optional[Callable[[str], Optional[str]]] = None,
                 logger: Any = None) -> None:
        self.settings = settings
        self._runner = runner or subprocess.run
        self._which = which or shutil.which
        self.logger = (logger or structlog.get_logger()).bind(component="compose")

    def _compose_argv(self, *args: str) -> List[str]:
        return [
            *self.settings.compose_command,
            "-f", str(self.settings.compose_path),
            *args,
        ]

    def _run(self, argv: Sequence[str], check: bool = True, capture: bool = False) -> subprocess.CompletedProcess:
        self.logger.debug("Executing command", argv=list(argv))
        kwargs = {"cwd": str(self.settings.project_dir), "check": False}
        if capture:
            kwargs.update(stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)

        try:
            result = self._runner(list(argv), **kwargs)
        except OSError as e:
            raise ComposeError(argv, 127, str(e))

        if check and result.returncode != 0:
            raise ComposeError(argv, result.returncode, result.stdout if capture else "")
        return result

    def docker_available(self) -> bool:
        """Whether the docker daemon answers ``docker info``."""
        try:
            result = self._runner(
                ["docker", "info"],
                check=False,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL
            )
        except OSError:
            return False
        return result.returncode == 0

    def compose_available(self) -> bool:
        """Whether the compose executable is on PATH."""
        return self._which(self.settings.compose_command[0]) is not None

    def up(self) -> None:
        self._run(self._compose_argv("up", "-d"))

    def down(self, volumes: bool = False) -> None:
        args = ["down", "-v"] if volumes else ["down"]
        self._run(self._compose_argv(*args))

    def pull(self) -> None:
        self._run(self._compose_argv("pull"))

    def ps(self, capture: bool = True) -> str:
        result = self._run(self._compose_argv("ps"), capture=capture)
        return result.stdout if capture else ""

    def logs(self,
             service: Optional[str] = None,
             follow: bool = False,
             tail: Optional[int] = None,
             capture: bool = False) -> str:
        args = ["logs"]
        if follow:
            args.append("-f")
        if tail is not None:
            args.append(f"--tail={tail}")
        if service:
            args.append(service)

        result = self._run(self._compose_argv(*args), capture=capture)
        return result.stdout if capture else ""

    def volume_exists(self, name: str) -> bool:
        """Whether docker lists ``name``; False when docker cannot be queried."""
        try:
            result = self._run(["docker", "volume", "ls", "-q"], check=False, capture=True)
        except ComposeError as e:
            self.logger.warning("Could not list docker volumes", error=str(e))
            return False
        if result.returncode != 0:
            return False
        return name in (result.stdout or "").split()

    def remove_images(self, images: Sequence[str]) -> bool:
        """Remove images; False when docker refuses or cannot be run."""
        try:
            result = self._run(["docker", "rmi", *images], check=False)
        except ComposeError as e:
            self.logger.warning("Could not run docker rmi", error=str(e))
            return False
        return result.returncode == 0

    def archive_volume(self, volume: str, destination: Path, archive_name: str) -> None:
        """Write the contents of ``volume`` to ``destination/archive_name``."""
        self._run([
            "docker", "run", "--rm",
            "-v", f"{volume}:/data",
            "-v", f"{destination.resolve()}:/backup",
            self.settings.archive_image,
            "tar", "-czf", f"/backup/{archive_name}", "-C", "/data", ".",
        ])

    def restore_volume(self, volume: str, source: Path, archive_name: str) -> None:
        """Extract ``source/archive_name`` into ``volume``."""
        self._run([
            "docker", "run", "--rm",
            "-v", f"{volume}:/data",
            "-v", f"{source.resolve()}:/backup",
            self.settings.archive_image,
            "sh", "-c", f"cd /data && tar -xzf /backup/{archive_name}",
        ])
