"""Thin async wrapper around the ``gh`` CLI.

Every call passes an argument list to ``asyncio.create_subprocess_exec``;
nothing is ever interpolated into a shell string. Each lookup returns None
on any failure (missing PR, non-zero exit, timeout, malformed output).
Rate-limit failures are additionally logged as warnings.
"""

import asyncio
import json
from dataclasses import dataclass

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PrInfo:
    number: int
    state: str
    url: str


@dataclass(frozen=True)
class CiStatusInfo:
    status: str
    conclusion: str | None

    @property
    def effective(self) -> str:
        """The conclusion once checks finished, otherwise the run status."""
        return self.conclusion or self.status


class GitHubCliError(Exception):
    """A ``gh`` invocation exited non-zero or timed out."""


class GitHubCli:
    """Source-control queries for agent branches.

    Attributes:
        binary: Executable to invoke (default ``gh``).
        timeout_seconds: Per-invocation timeout.
    """

    def __init__(self, binary: str = "gh", timeout_seconds: float = 30.0) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    async def get_pr_for_branch(self, branch: str) -> PrInfo | None:
        """Return the pull request whose head is ``branch``, if any."""
        try:
            stdout = await self._run(
                "pr", "list",
                "--head", branch,
                "--json", "number,state,url",
                "--limit", "1",
            )
            parsed = json.loads(stdout)
            if not isinstance(parsed, list) or not parsed:
                return None
            first = parsed[0]
            return PrInfo(
                number=int(first["number"]),
                state=str(first["state"]),
                url=str(first["url"]),
            )
        except Exception as e:
            self._log_failure("pr_lookup", branch, e)
            return None

    async def get_ci_status(self, branch: str) -> CiStatusInfo | None:
        """Return the status of the first check run on the branch head."""
        try:
            stdout = await self._run(
                "api",
                f"repos/{{owner}}/{{repo}}/commits/{branch}/check-runs",
                "--jq", ".check_runs[0] | {status: .status, conclusion: .conclusion}",
            )
            if not stdout or stdout == "null":
                return None
            parsed = json.loads(stdout)
            return CiStatusInfo(
                status=parsed.get("status") or "unknown",
                conclusion=parsed.get("conclusion"),
            )
        except Exception as e:
            self._log_failure("ci_status", branch, e)
            return None

    async def get_last_commit_timestamp(self, branch: str) -> str | None:
        """Return the committer date (ISO-8601) of the branch head."""
        try:
            stdout = await self._run(
                "api",
                f"repos/{{owner}}/{{repo}}/commits/{branch}",
                "--jq", ".commit.committer.date",
            )
        except Exception as e:
            self._log_failure("last_commit", branch, e)
            return None
        if not stdout or stdout == "null":
            return None
        return stdout

    async def _run(self, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            self.binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise GitHubCliError(
                f"{self.binary} timed out after {self.timeout_seconds}s"
            ) from None

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise GitHubCliError(message or f"{self.binary} exited with {proc.returncode}")
        return stdout.decode(errors="replace").strip()

    def _log_failure(self, operation: str, branch: str, error: Exception) -> None:
        message = str(error)
        if "rate limit" in message.lower() or "403" in message:
            logger.warning(
                "gh_rate_limited",
                operation=operation,
                branch=branch,
                error=message,
            )
        else:
            logger.debug(
                "gh_query_failed",
                operation=operation,
                branch=branch,
                error=message,
            )
