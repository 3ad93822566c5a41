"""Source-control queries (pull requests, CI status, commit activity)."""

from scm.github_cli import CiStatusInfo, GitHubCli, GitHubCliError, PrInfo

__all__ = [
    "CiStatusInfo",
    "GitHubCli",
    "GitHubCliError",
    "PrInfo",
]
