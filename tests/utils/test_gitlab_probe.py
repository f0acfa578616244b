"""
GitLab reachability probe tests.
"""

import asyncio

import httpx
import pytest

from dind_runner.utils.gitlab_client import GitLabProbe, GitLabProbeError


def make_probe(handler):
    return GitLabProbe("https://ci.example.com/", transport=httpx.MockTransport(handler))


class TestGitLabProbe:
    """Test connectivity checks against a mocked transport."""

    def test_version_endpoint_success(self):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, json={"version": "16.9.0", "revision": "abc"})

        info = asyncio.run(make_probe(handler).check_connectivity())

        assert requested == ["https://ci.example.com/api/v4/version"]
        assert info == {"status_code": 200, "version": "16.9.0", "revision": "abc"}

    def test_unauthorized_still_counts_as_reachable(self):
        def handler(request):
            return httpx.Response(401, json={"message": "401 Unauthorized"})

        info = asyncio.run(make_probe(handler).check_connectivity())

        assert info == {"status_code": 401}

    def test_server_error_raises(self):
        def handler(request):
            return httpx.Response(502)

        with pytest.raises(GitLabProbeError):
            asyncio.run(make_probe(handler).check_connectivity())

    def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GitLabProbeError) as exc_info:
            asyncio.run(make_probe(handler).check_connectivity())

        assert "ci.example.com" in str(exc_info.value)

    def test_url_is_required(self):
        with pytest.raises(GitLabProbeError):
            GitLabProbe("")
