"""
Security utilities for the Docker-in-Docker runner.

The executor profile deliberately runs jobs privileged with the engine
socket mounted, so nothing here rejects a profile. The auditor reports
what an operator should be aware of, and the redaction helpers keep
registration tokens out of the logs.
"""

from typing import List, Sequence
from urllib.parse import urlparse

import structlog

from ..models.runner import ExecutorProfile


REDACTED = "[REDACTED]"

_SECRET_FLAGS = ("--registration-token", "--token", "-r")


class ProfileAuditor:
    """
    Reports security-relevant properties of runner configuration.

    Every check returns a list of human-readable warnings; an empty
    list means nothing noteworthy was found.
    """

    def __init__(self) -> None:
        self.logger = structlog.get_logger().bind(component="profile_auditor")

        self.engine_socket_paths = {
            "/var/run/docker.sock",
            "/run/docker.sock",
        }
        self.host_paths = {"/", "/etc", "/proc", "/sys", "/dev", "/root"}

    def audit_executor_profile(self, profile: ExecutorProfile) -> List[str]:
        """
        Audit an executor profile.

        Args:
            profile: Executor profile to audit

        Returns:
            List of warnings found
        """
        issues = []

        if profile.privileged:
            issues.append("Job containers run in privileged mode")

        issues.extend(self._audit_volumes(profile.volumes))
        issues.extend(self._audit_image(profile.image))

        if profile.network_mode == "host":
            issues.append("Job containers share the host network namespace")

        if profile.wait_for_services_timeout == -1:
            issues.append("Waiting for job services is disabled")

        if profile.memory_swap.startswith("-1"):
            issues.append("Swap usage is unlimited")

        self.logger.debug("Executor profile audited", image=profile.image, issues=len(issues))
        return issues

    def _audit_volumes(self, volumes: Sequence[str]) -> List[str]:
        issues = []

        for volume in volumes:
            source = volume.split(":", 1)[0]
            if source in self.engine_socket_paths:
                issues.append(f"Host container engine socket is mounted: {source}")
            elif ":" in volume and source in self.host_paths:
                issues.append(f"Sensitive host path is mounted: {source}")

        return issues

    def _audit_image(self, image: str) -> List[str]:
        issues = []

        if "@" in image:
            return issues

        name = image.rsplit("/", 1)[-1]
        if ":" not in name or name.endswith(":latest"):
            issues.append("Image uses 'latest' tag or no tag specified")

        if image.startswith("http://"):
            issues.append("Image uses insecure HTTP registry")

        return issues

    def audit_server_url(self, url: str) -> List[str]:
        """Warn about cleartext connections to a remote GitLab server."""
        issues = []
        if not url:
            return issues

        parsed = urlparse(url)
        host = parsed.hostname or ""
        if parsed.scheme == "http" and host not in ("localhost", "127.0.0.1", "::1"):
            issues.append(f"GitLab server {host} is contacted over plain HTTP")

        return issues

    @staticmethod
    def redact_command(argv: Sequence[str]) -> List[str]:
        """Return a copy of ``argv`` with secret option values masked."""
        redacted = []
        mask_next = False

        for arg in argv:
            if mask_next:
                redacted.append(REDACTED)
                mask_next = False
                continue

            flag, sep, _ = arg.partition("=")
            if flag in _SECRET_FLAGS:
                if sep:
                    redacted.append(f"{flag}={REDACTED}")
                else:
                    redacted.append(arg)
                    mask_next = True
                continue

            redacted.append(arg)

        return redacted
