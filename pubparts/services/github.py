from __future__ import annotations

import base64
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx
from fastapi import Depends

from pubparts.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

BUSY_STATUS_CODES = {502, 503, 504}


class GitHubError(Exception):
    """Base hosting API error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubUnavailableError(GitHubError):
    """Raised on gateway errors, timeouts and transport failures."""


class GitHubNotFoundError(GitHubError):
    """Raised when a ref, path or pull request does not exist."""


class GitHubForbiddenError(GitHubError):
    """Raised when the token lacks permission for the operation."""


class GitHubRateLimitedError(GitHubError):
    """Raised when the hosting API throttles this token."""


class GitHubConflictError(GitHubError):
    """Raised on 409 responses and unmergeable pull requests."""


class GitHubValidationError(GitHubError):
    """Raised on 422 responses (e.g. reference already exists, PR already open)."""


class GitHubClient:
    def __init__(
        self,
        *,
        token: str | None,
        owner: str,
        repo: str,
        api_url: str = "https://api.github.com",
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "pubparts-submission-service",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_branch_sha(self, branch: str) -> str:
        payload = await self._request("GET", f"{self.repo_path}/git/ref/heads/{quote(branch)}")
        return payload["object"]["sha"]

    async def branch_exists(self, branch: str) -> bool:
        try:
            await self.get_branch_sha(branch)
        except GitHubNotFoundError:
            return False
        return True

    async def create_branch(self, branch: str, sha: str) -> None:
        await self._request(
            "POST",
            f"{self.repo_path}/git/refs",
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )

    async def update_branch(self, branch: str, sha: str) -> None:
        await self._request(
            "PATCH",
            f"{self.repo_path}/git/refs/heads/{quote(branch)}",
            json={"sha": sha, "force": False},
        )

    async def get_commit_tree_sha(self, commit_sha: str) -> str:
        payload = await self._request("GET", f"{self.repo_path}/git/commits/{commit_sha}")
        return payload["tree"]["sha"]

    async def get_contents(self, path: str, *, ref: str) -> Any:
        """File payload (dict) or directory listing (list) at ``ref``."""
        return await self._request(
            "GET",
            f"{self.repo_path}/contents/{quote(path)}",
            params={"ref": ref},
        )

    async def list_tree_files(self, path: str, *, ref: str) -> list[dict[str, Any]]:
        """Files directly under ``path`` at ``ref``, read from the recursive git tree.

        The contents API stops at 1,000 entries per directory; the tree listing does not.
        """
        payload = await self._request(
            "GET",
            f"{self.repo_path}/git/trees/{quote(ref, safe='')}",
            params={"recursive": "1"},
        )
        if payload.get("truncated"):
            raise GitHubValidationError(f"tree listing at {ref} was truncated")
        prefix = f"{path.strip('/')}/"
        files: list[dict[str, Any]] = []
        for item in payload.get("tree", []):
            item_path = item.get("path", "")
            name = item_path.removeprefix(prefix)
            if item.get("type") != "blob" or not item_path.startswith(prefix) or "/" in name:
                continue
            files.append({"name": name, "path": item_path, "sha": item.get("sha"), "type": "file"})
        return files

    async def read_file(self, path: str, *, ref: str) -> tuple[str, str]:
        """Return ``(text, blob_sha)`` for a UTF-8 file."""
        payload = await self.get_contents(path, ref=ref)
        if not isinstance(payload, dict) or payload.get("type") != "file":
            raise GitHubValidationError(f"{path} is not a file")
        raw = base64.b64decode(payload.get("content") or "")
        return raw.decode("utf-8"), payload["sha"]

    async def put_file(
        self,
        path: str,
        *,
        text: str,
        branch: str,
        message: str,
        sha: str | None,
    ) -> str:
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(text.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha:
            body["sha"] = sha
        payload = await self._request("PUT", f"{self.repo_path}/contents/{quote(path)}", json=body)
        return payload["commit"]["sha"]

    async def create_blob(self, text: str) -> str:
        payload = await self._request(
            "POST",
            f"{self.repo_path}/git/blobs",
            json={
                "content": base64.b64encode(text.encode("utf-8")).decode("ascii"),
                "encoding": "base64",
            },
        )
        return payload["sha"]

    async def create_tree(self, base_tree: str, entries: list[dict[str, Any]]) -> str:
        payload = await self._request(
            "POST",
            f"{self.repo_path}/git/trees",
            json={"base_tree": base_tree, "tree": entries},
        )
        return payload["sha"]

    async def create_commit(self, *, message: str, tree: str, parents: list[str]) -> str:
        payload = await self._request(
            "POST",
            f"{self.repo_path}/git/commits",
            json={"message": message, "tree": tree, "parents": parents},
        )
        return payload["sha"]

    async def create_pull(self, *, title: str, head: str, base: str, body: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{self.repo_path}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )

    async def list_open_pulls(self, *, base: str) -> list[dict[str, Any]]:
        pulls: list[dict[str, Any]] = []
        page = 1
        while True:
            batch = await self._request(
                "GET",
                f"{self.repo_path}/pulls",
                params={"state": "open", "base": base, "per_page": 100, "page": page},
            )
            pulls.extend(batch)
            if len(batch) < 100:
                return pulls
            page += 1

    async def get_pull(self, number: int) -> dict[str, Any]:
        return await self._request("GET", f"{self.repo_path}/pulls/{number}")

    async def list_pull_files(self, number: int) -> list[dict[str, Any]]:
        return await self._request(
            "GET",
            f"{self.repo_path}/pulls/{number}/files",
            params={"per_page": 100},
        )

    async def merge_pull(self, number: int, *, merge_method: str = "squash") -> dict[str, Any]:
        return await self._request(
            "PUT",
            f"{self.repo_path}/pulls/{number}/merge",
            json={"merge_method": merge_method},
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.api_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self.headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise GitHubUnavailableError(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise GitHubUnavailableError(f"{method} {path} failed: {exc}") from exc

        if response.is_success:
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        raise _error_for(method, path, response)


def _error_for(method: str, path: str, response: httpx.Response) -> GitHubError:
    status_code = response.status_code
    message = f"{method} {path} -> {status_code}: {_error_message(response)}"
    logger.warning("github request failed method=%s path=%s status=%s", method, path, status_code)

    if status_code in BUSY_STATUS_CODES:
        return GitHubUnavailableError(message, status_code=status_code)
    if status_code == 429 or (status_code == 403 and _is_throttled(response)):
        return GitHubRateLimitedError(message, status_code=status_code)
    if status_code in {401, 403}:
        return GitHubForbiddenError(message, status_code=status_code)
    if status_code == 404:
        return GitHubNotFoundError(message, status_code=status_code)
    if status_code in {405, 409}:
        return GitHubConflictError(message, status_code=status_code)
    if status_code == 422:
        return GitHubValidationError(message, status_code=status_code)
    return GitHubError(message, status_code=status_code)


def _is_throttled(response: httpx.Response) -> bool:
    # Secondary rate limits send retry-after without exhausting the primary quota.
    return response.headers.get("x-ratelimit-remaining") == "0" or "retry-after" in response.headers


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return payload["message"]
    return response.text[:200]


def build_github_client(settings: Settings, *, client: httpx.AsyncClient | None = None) -> GitHubClient:
    return GitHubClient(
        token=settings.github_token,
        owner=settings.github_owner,
        repo=settings.github_repo,
        api_url=settings.github_api_url,
        timeout_seconds=settings.github_timeout_seconds,
        client=client,
    )


async def get_github_client(settings: Settings = Depends(get_settings)) -> AsyncIterator[GitHubClient]:
    github = build_github_client(settings)
    try:
        yield github
    finally:
        await github.close()
