from __future__ import annotations

import base64
import json
from typing import Any

import httpx
import pytest

from pubparts.services.github import GitHubClient

OWNER = "Focerqc"
REPO = "CLONEpubparts.xyz"
API_URL = "https://api.github.test"
REPO_PREFIX = f"/repos/{OWNER}/{REPO}"


class FakeGitHub:
    """In-memory stand-in for the slice of the GitHub REST API the service calls."""

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self.refs: dict[str, str] = {"master": "base-sha"}
        self.files: dict[str, str] = dict(files or {})
        self.blobs: dict[str, str] = {}
        self.trees: list[dict[str, Any]] = []
        self.commits: list[dict[str, Any]] = []
        self.put_files: list[dict[str, Any]] = []
        self.pulls: dict[int, dict[str, Any]] = {}
        self.pull_files: dict[int, list[dict[str, Any]]] = {}
        self.created_pulls: list[dict[str, Any]] = []
        self.merged: list[int] = []
        self.failures: dict[tuple[str, str], tuple[int, dict[str, str]]] = {}
        self.calls: list[tuple[str, str]] = []

    def client(self) -> GitHubClient:
        return GitHubClient(
            token="test-token",
            owner=OWNER,
            repo=REPO,
            api_url=API_URL,
            client=httpx.AsyncClient(transport=httpx.MockTransport(self)),
        )

    def fail(
        self, method: str, path_prefix: str, status_code: int, *, headers: dict[str, str] | None = None
    ) -> None:
        self.failures[(method, path_prefix)] = (status_code, headers or {})

    def add_pull(self, number: int, *, branch: str, files: list[dict[str, Any]] | None = None) -> None:
        self.pulls[number] = {
            "number": number,
            "title": f"Add part #{number}",
            "user": {"login": "community-bot"},
            "body": "Community submission of 1 part(s).",
            "created_at": "2026-10-01T12:00:00Z",
            "html_url": f"https://github.com/{OWNER}/{REPO}/pull/{number}",
            "head": {"ref": branch, "sha": f"head-{number}"},
        }
        self.pull_files[number] = files or []

    @property
    def created_branches(self) -> list[str]:
        return [name for name in self.refs if name != "master"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path.removeprefix(REPO_PREFIX)
        self.calls.append((method, path))
        for (fail_method, prefix), (status_code, headers) in self.failures.items():
            if method == fail_method and path.startswith(prefix):
                return httpx.Response(
                    status_code, json={"message": "simulated failure"}, headers=headers, request=request
                )

        body = json.loads(request.content) if request.content else {}

        if path.startswith("/git/ref/heads/"):
            branch = path.removeprefix("/git/ref/heads/")
            if branch not in self.refs:
                return _not_found(request)
            return httpx.Response(200, json={"object": {"sha": self.refs[branch]}}, request=request)

        if path == "/git/refs" and method == "POST":
            branch = body["ref"].removeprefix("refs/heads/")
            if branch in self.refs:
                return httpx.Response(422, json={"message": "Reference already exists"}, request=request)
            self.refs[branch] = body["sha"]
            return httpx.Response(201, json={"ref": body["ref"]}, request=request)

        if path.startswith("/git/refs/heads/") and method == "PATCH":
            self.refs[path.removeprefix("/git/refs/heads/")] = body["sha"]
            return httpx.Response(200, json={}, request=request)

        if path.startswith("/git/commits/") and method == "GET":
            sha = path.removeprefix("/git/commits/")
            return httpx.Response(200, json={"sha": sha, "tree": {"sha": f"tree-of-{sha}"}}, request=request)

        if path == "/git/blobs":
            sha = f"blob-{len(self.blobs) + 1}"
            self.blobs[sha] = base64.b64decode(body["content"]).decode("utf-8")
            return httpx.Response(201, json={"sha": sha}, request=request)

        if path.startswith("/git/trees/") and method == "GET":
            tree = [{"path": name, "type": "blob", "sha": f"sha-{name}"} for name in sorted(self.files)]
            return httpx.Response(200, json={"sha": "base-tree", "tree": tree, "truncated": False}, request=request)

        if path == "/git/trees":
            self.trees.append(body)
            return httpx.Response(201, json={"sha": f"tree-{len(self.trees)}"}, request=request)

        if path == "/git/commits" and method == "POST":
            self.commits.append(body)
            return httpx.Response(201, json={"sha": f"commit-{len(self.commits)}"}, request=request)

        if path.startswith("/contents/"):
            return self._contents(request, path.removeprefix("/contents/"), body)

        if path == "/pulls" and method == "POST":
            number = 100 + len(self.created_pulls) + 1
            self.created_pulls.append(body)
            self.add_pull(number, branch=body["head"])
            return httpx.Response(201, json=self.pulls[number], request=request)

        if path == "/pulls" and method == "GET":
            return httpx.Response(200, json=list(self.pulls.values()), request=request)

        if path.startswith("/pulls/"):
            return self._pull(request, path.removeprefix("/pulls/"))

        return _not_found(request)

    def _contents(self, request: httpx.Request, file_path: str, body: dict[str, Any]) -> httpx.Response:
        if request.method == "PUT":
            self.put_files.append({"path": file_path, **body})
            return httpx.Response(200, json={"commit": {"sha": "commit-put"}}, request=request)

        if file_path in self.files:
            content = base64.b64encode(self.files[file_path].encode("utf-8")).decode("ascii")
            payload = {"type": "file", "path": file_path, "sha": f"sha-{file_path}", "content": content}
            return httpx.Response(200, json=payload, request=request)

        return _not_found(request)

    def _pull(self, request: httpx.Request, rest: str) -> httpx.Response:
        number_text, _, action = rest.partition("/")
        number = int(number_text)
        if number not in self.pulls:
            return _not_found(request)
        if action == "files":
            return httpx.Response(200, json=self.pull_files[number], request=request)
        if action == "merge":
            self.merged.append(number)
            payload = {"sha": f"merge-{number}", "merged": True, "message": "Pull Request successfully merged"}
            return httpx.Response(200, json=payload, request=request)
        return httpx.Response(200, json=self.pulls[number], request=request)


def _not_found(request: httpx.Request) -> httpx.Response:
    return httpx.Response(404, json={"message": "Not Found"}, request=request)


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


def part_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": "Motor mount",
        "imageSrc": "https://media.printables.com/mount.png",
        "platform": ["Meepo"],
        "fabricationMethod": ["3d Printed"],
        "typeOfPart": ["Mount"],
        "dropboxUrl": "",
        "externalUrl": "https://www.printables.com/model/555-motor-mount",
    }
    payload.update(overrides)
    return payload
