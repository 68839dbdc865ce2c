"""Source host access (GitHub REST API)."""

from .github import GitHubFetcher, is_github_url, parse_repository_ref  # noqa: F401
