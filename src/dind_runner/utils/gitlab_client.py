"""
GitLab server reachability probe.

Used by the operator CLI to check, before starting the deployment, that
the configured control-plane URL answers at all. It deliberately needs
no credentials: registration itself is left to ``gitlab-runner``.
"""

import ssl
from typing import Any, Dict, Optional

import httpx
import structlog


class GitLabProbeError(Exception):
    """Raised when the GitLab server cannot be reached."""
    pass


class GitLabProbe:
    """
    Unauthenticated connectivity check against a GitLab server.

    Any HTTP answer below 500 counts as reachable; unauthenticated
    instances answer ``/api/v4/version`` with 401, which still proves the
    server is up and speaking HTTP.
    """

    VERSION_ENDPOINT = "/api/v4/version"

    def __init__(self,
                 url: str,
                 ca_cert_path: Optional[str] = None,
                 tls_verify: bool = True,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 logger: Any = None) -> None:
        """
        Initialize the probe.

        Args:
            url: GitLab server URL
            ca_cert_path: Path to CA certificate for TLS verification
            tls_verify: Whether to verify TLS certificates
            transport: Optional httpx transport override
            logger: Structured logger instance
        """
        if not url:
            raise GitLabProbeError("GitLab URL is required")

        self.url = url.rstrip("/")
        self.ca_cert_path = ca_cert_path
        self.tls_verify = tls_verify
        self._transport = transport
        self.logger = (logger or structlog.get_logger()).bind(
            component="gitlab_probe",
            url=self.url
        )

    def _build_client(self) -> httpx.AsyncClient:
        verify: Any = self.tls_verify
        if self.tls_verify and self.ca_cert_path:
            verify = ssl.create_default_context(cafile=self.ca_cert_path)
        elif not self.tls_verify:
            self.logger.warning("TLS verification disabled - not recommended for production")

        timeout = httpx.Timeout(
            connect=10.0,
            read=30.0,
            write=10.0,
            pool=60.0
        )

        return httpx.AsyncClient(
            base_url=self.url,
            timeout=timeout,
            headers={
                "User-Agent": "gitlab-dind-runner",
                "Accept": "application/json",
            },
            verify=verify,
            follow_redirects=False,
            transport=self._transport
        )

    async def check_connectivity(self) -> Dict[str, Any]:
        """
        Test basic connectivity to the GitLab server.

        Returns:
            ``status_code`` plus ``version``/``revision`` when the server
            disclosed them

        Raises:
            GitLabProbeError: If the server is unreachable or failing
        """
        try:
            async with self._build_client() as client:
                response = await client.get(self.VERSION_ENDPOINT)
        except httpx.TimeoutException:
            self.logger.warning("GitLab connectivity check timed out")
            raise GitLabProbeError(f"Timed out contacting {self.url}")
        except httpx.HTTPError as e:
            self.logger.error("GitLab connectivity check failed", error=str(e))
            raise GitLabProbeError(f"Could not contact {self.url}: {e}")

        if response.status_code >= 500:
            raise GitLabProbeError(
                f"GitLab server error: {response.status_code}"
            )

        info: Dict[str, Any] = {"status_code": response.status_code}
        if response.status_code == 200:
            try:
                version_data = response.json()
            except ValueError:
                version_data = {}
            if isinstance(version_data, dict):
                info["version"] = version_data.get("version", "unknown")
                info["revision"] = version_data.get("revision", "unknown")

        self.logger.info("GitLab connectivity verified", **info)
        return info
