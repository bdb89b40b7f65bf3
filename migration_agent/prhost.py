"""
GitHub REST client for pull requests.
Create PR, add labels, read PR state to observe a human merge.
The agent never merges.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import httpx

from .config import PRHostConfig
from .errors import PRHostError

log = logging.getLogger(__name__)


class GitHubPRHost:
    """Sync client for the GitHub pulls API."""

    def __init__(
        self,
        repository: str,
        token: str | None = None,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if "/" not in repository:
            raise PRHostError(f"Repository must be 'owner/name', got {repository!r}")
        self.repository = repository
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    @classmethod
    def from_config(cls, repository: str, config: PRHostConfig) -> "GitHubPRHost":
        return cls(
            repository,
            token=os.environ.get(config.token_env, ""),
            api_url=config.api_url,
            timeout=config.timeout_sec,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> dict | list:
        try:
            r = self._client.request(method, f"/repos/{self.repository}{path}", **kwargs)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PRHostError(
                f"{method} {path} -> {e.response.status_code}: {e.response.text[:300]}"
            ) from e
        except httpx.HTTPError as e:
            raise PRHostError(f"{method} {path} failed: {e}") from e
        return r.json() if r.content else {}

    # ── Pull requests ──────────────────────────────────────────

    def create_pull_request(self, title: str, body: str, base: str, head: str) -> dict:
        """Open a PR. Returns {"url", "number"}."""
        data = self._request(
            "POST", "/pulls", json={"title": title, "body": body, "base": base, "head": head}
        )
        log.info("Opened PR #%s on %s", data.get("number"), self.repository)
        return {"url": data.get("html_url", ""), "number": int(data.get("number", 0))}

    def add_labels(self, number: int, labels: list[str]) -> None:
        if labels:
            self._request("POST", f"/issues/{number}/labels", json={"labels": list(labels)})

    def get_pull_request(self, number: int) -> Optional[dict]:
        """PR state: {"state": open|closed, "merged": bool, "merge_commit_sha"}; None if missing."""
        try:
            data = self._request("GET", f"/pulls/{number}")
        except PRHostError as e:
            if "-> 404" in str(e):
                return None
            raise
        return {
            "state": data.get("state", ""),
            "merged": bool(data.get("merged")),
            "merge_commit_sha": data.get("merge_commit_sha"),
        }
