"""
Persisted runner identity record.

``gitlab-runner register`` writes the runner's authentication token into
its ``config.toml``. The presence of that token is what proves the runner
has already registered; this package only ever reads the file.
"""

import tomllib
from pathlib import Path
from typing import Any, Optional

import structlog


TOKEN_MARKER = "token"


class RunnerIdentityRecord:
    """
    Read-only view of the runner configuration file.

    By default a record counts as registered when the file exists and
    contains the substring ``token``, which is what the container
    entrypoint has always checked. With ``strict=True`` the file is parsed
    as TOML and one of its ``[[runners]]`` entries must carry a non-empty
    ``token``.
    """

    def __init__(self, path: Path, strict: bool = False, logger: Any = None) -> None:
        self.path = Path(path)
        self.strict = strict
        self.logger = (logger or structlog.get_logger()).bind(
            component="identity_record",
            path=str(self.path)
        )

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> Optional[str]:
        """Return the file contents, or None if it is missing or unreadable."""
        if not self.exists():
            return None

        try:
            return self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            self.logger.warning("Runner configuration is unreadable", error=str(e))
            return None

    def contains_token(self, content: str) -> bool:
        """Apply the token predicate to configuration text."""
        if not self.strict:
            return TOKEN_MARKER in content

        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as e:
            self.logger.warning("Runner configuration is not valid TOML", error=str(e))
            return False

        runners = data.get("runners")
        if not isinstance(runners, list):
            return False

        return any(
            isinstance(runner, dict)
            and isinstance(runner.get("token"), str)
            and runner["token"].strip() != ""
            for runner in runners
        )

    def is_registered(self) -> bool:
        """True iff the record exists and satisfies the token predicate."""
        content = self.read()
        if content is None:
            return False
        return self.contains_token(content)
