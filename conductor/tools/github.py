"""GitHub REST client for opening pull requests.

Thin httpx wrapper around ``POST /repos/{owner}/{repo}/pulls``. The token
comes from the environment variable named in config (GITHUB_TOKEN by
default) and is never logged.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Optional

import httpx

from conductor.core.config import GitHubConfig
from conductor.core.exceptions import PullRequestError

logger = logging.getLogger("conductor.tools.github")

_SSH_RE = re.compile(r"^(?:ssh://)?git@github\.com[:/](?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$")
_HTTPS_RE = re.compile(
    r"^https://(?:[^@/]+@)?github\.com/(?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$"
)


def parse_github_repo(origin_url: str) -> tuple[str, str]:
    """Return ``(owner, name)`` for an ssh or https GitHub remote.

    Raises:
        PullRequestError: If the URL is not a GitHub remote.
    """
    url = origin_url.strip()
    if not url:
        raise PullRequestError("git remote get-url origin returned an empty URL")
    for pattern in (_SSH_RE, _HTTPS_RE):
        match = pattern.match(url)
        if match:
            return match.group("owner"), match.group("name")
    raise PullRequestError(f"Unable to parse GitHub remote URL: {url}")


class GitHubClient:
    """Creates pull requests through the GitHub REST API."""

    def __init__(self, config: Optional[GitHubConfig] = None, token: Optional[str] = None):
        self.config = config or GitHubConfig()
        self.token = token if token is not None else os.getenv(self.config.token_env, "").strip()
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.config.api_url.rstrip("/"),
                timeout=httpx.Timeout(self.config.timeout_seconds),
            )
        return self._client

    def create_pull_request(
        self,
        origin_url: str,
        head: str,
        base: str,
        title: str,
        body: str,
    ) -> str:
        """Open a pull request and return its html URL.

        Raises:
            PullRequestError: Missing token, head == base, or a non-2xx
                response from GitHub.
        """
        title = title.strip()
        if not title:
            raise PullRequestError("Pull request title must not be empty")
        if head == base:
            raise PullRequestError(
                f"Refusing to open pull request from {head} to {base}. Create a feature branch first."
            )
        if not self.token:
            raise PullRequestError(f"{self.config.token_env} is required to create pull requests")

        owner, name = parse_github_repo(origin_url)
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self.token}",
            "User-Agent": self.config.user_agent,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        payload = {"title": title, "body": body, "head": head, "base": base}

        try:
            resp = self.client.post(f"/repos/{owner}/{name}/pulls", json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise PullRequestError(f"GitHub request failed: {e}") from e

        if resp.status_code >= 400:
            raise PullRequestError(
                f"GitHub PR creation failed ({resp.status_code}): {resp.text[:500]}"
            )

        data = resp.json()
        url = data.get("html_url")
        if not isinstance(url, str) or not url:
            raise PullRequestError("GitHub PR response did not include html_url")
        logger.info("Opened pull request %s (%s -> %s)", url, head, base)
        return url

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
