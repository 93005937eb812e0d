"""Admin review console: pending review requests, merges and batch operations."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from pubparts.schemas.parts import CatalogEntry, PartRecord
from pubparts.services.audit import find_duplicate_groups
from pubparts.services.catalog import CatalogReader, added_lines, extract_json_objects, parse_part
from pubparts.services.changeset import CatalogLayout, ChangesetBuilder, ChangesetError
from pubparts.services.github import (
    GitHubClient,
    GitHubConflictError,
    GitHubError,
    GitHubNotFoundError,
    GitHubRateLimitedError,
    GitHubUnavailableError,
)
from pubparts.services.publisher import PublishState, ReviewRequestPublisher
from pubparts.services.vocabulary import clean_categories

logger = logging.getLogger(__name__)


class AdminError(Exception):
    """Base admin console error."""


class AdminNotFoundError(AdminError):
    """Raised when the review request does not exist."""


class AdminConflictError(AdminError):
    """Raised when a review request cannot be merged."""


class AdminValidationError(AdminError):
    """Raised when a batch payload is empty or inconsistent."""


class AdminUnavailableError(AdminError):
    """Raised when the hosting API is busy or throttling."""


@dataclass(slots=True)
class BatchMergeOutcome:
    number: int
    merged: bool
    error: str | None = None


@dataclass(slots=True)
class BatchChangesetOutcome:
    state: str
    branch: str | None = None
    pr_url: str | None = None
    manual_url: str | None = None
    merged: bool = False
    warning: str | None = None
    error: str | None = None


@dataclass(slots=True)
class BatchActionResult:
    merges: list[BatchMergeOutcome] = field(default_factory=list)
    changeset: BatchChangesetOutcome | None = None

    @property
    def success(self) -> bool:
        merges_ok = all(outcome.merged for outcome in self.merges)
        changeset_ok = self.changeset is None or self.changeset.merged
        return merges_ok and changeset_ok


@contextmanager
def _upstream(action: str) -> Iterator[None]:
    try:
        yield
    except GitHubNotFoundError as exc:
        raise AdminNotFoundError(f"{action}: not found") from exc
    except GitHubConflictError as exc:
        raise AdminConflictError(f"{action}: {exc}") from exc
    except (GitHubUnavailableError, GitHubRateLimitedError) as exc:
        raise AdminUnavailableError(f"{action}: GitHub is busy, please try again shortly") from exc
    except GitHubError as exc:
        raise AdminError(f"{action}: {exc}") from exc


class AdminConsole:
    def __init__(
        self,
        github: GitHubClient,
        layout: CatalogLayout,
        *,
        builder: ChangesetBuilder,
        publisher: ReviewRequestPublisher,
        reader: CatalogReader,
    ) -> None:
        self.github = github
        self.layout = layout
        self.builder = builder
        self.publisher = publisher
        self.reader = reader

    async def list_open_requests(self) -> list[dict[str, Any]]:
        with _upstream("list pull requests"):
            pulls = await self.github.list_open_pulls(base=self.layout.base_branch)
        return [
            {
                "number": pull["number"],
                "title": pull.get("title") or "",
                "author": (pull.get("user") or {}).get("login"),
                "body": pull.get("body"),
                "created_at": pull.get("created_at"),
                "html_url": pull.get("html_url"),
                "branch": (pull.get("head") or {}).get("ref"),
            }
            for pull in pulls
        ]

    async def get_request_content(self, number: int) -> tuple[list[str], list[PartRecord]]:
        with _upstream(f"pull request #{number}"):
            pull = await self.github.get_pull(number)
            files = await self.github.list_pull_files(number)
            head_sha = pull["head"]["sha"]

            paths: list[str] = []
            parts: list[PartRecord] = []
            for changed in files:
                filename = changed.get("filename", "")
                if changed.get("status") == "removed":
                    continue
                if filename.startswith(f"{self.layout.parts_dir}/") and filename.endswith(".json"):
                    text, _ = await self.github.read_file(filename, ref=head_sha)
                    found = self._parts_from_file(filename, text)
                elif filename == self.layout.catalog_path and changed.get("patch"):
                    found = self._parts_from_text(added_lines(changed["patch"]))
                else:
                    continue
                paths.append(filename)
                parts.extend(found)
        return paths, parts

    async def merge_request(self, number: int) -> dict[str, Any]:
        with _upstream(f"merge pull request #{number}"):
            result = await self.github.merge_pull(number, merge_method="squash")
        logger.info("pull request merged number=%s sha=%s", number, result.get("sha"))
        return result

    async def batch_action(
        self,
        *,
        merge_prs: list[int],
        delete_files: list[str],
        categories: list[str] | None,
    ) -> BatchActionResult:
        if not merge_prs and not delete_files and categories is None:
            raise AdminValidationError("batch action has nothing to do")
        if categories is not None and not clean_categories(categories):
            raise AdminValidationError("category list must not be empty")
        if delete_files and self.layout.strategy != "files":
            raise AdminValidationError("deleting entries requires the one-file-per-record catalog")

        result = BatchActionResult()
        for number in dict.fromkeys(merge_prs):
            try:
                await self.merge_request(number)
            except AdminError as exc:
                logger.warning("batch merge failed number=%s error=%s", number, exc)
                result.merges.append(BatchMergeOutcome(number=number, merged=False, error=str(exc)))
            else:
                result.merges.append(BatchMergeOutcome(number=number, merged=True))

        if delete_files or categories is not None:
            result.changeset = await self._apply_admin_changeset(delete_files, categories)
        return result

    async def find_duplicates(self) -> dict[str, list[CatalogEntry]]:
        with _upstream("load catalog"):
            entries = await self.reader.load_entries()
        return find_duplicate_groups(entries)

    async def _apply_admin_changeset(
        self,
        delete_files: list[str],
        categories: list[str] | None,
    ) -> BatchChangesetOutcome:
        # Built after the merges so deletions apply to the updated base branch.
        try:
            changeset = await self.builder.build_admin_batch(delete_ids=delete_files, categories=categories)
        except ChangesetError as exc:
            logger.warning("admin changeset failed stage=%s error=%s", exc.stage.value, exc)
            return BatchChangesetOutcome(state=PublishState.FAILED.value, error=str(exc))

        body_lines = ["Batch change staged from the admin console.", ""]
        body_lines.extend(f"- delete `{path}`" for path in changeset.paths if path != self.layout.categories_path)
        if categories is not None:
            body_lines.append(f"- replace category vocabulary ({len(clean_categories(categories))} entries)")
        published = await self.publisher.publish(
            changeset,
            title=f"Admin batch ({changeset.branch})",
            body="\n".join(body_lines) + "\n",
        )
        outcome = BatchChangesetOutcome(
            state=published.state.value,
            branch=changeset.branch,
            pr_url=published.pr_url,
            manual_url=published.manual_url,
            warning=published.warning,
            error=published.error,
        )
        if not published.completed or published.pr_number is None:
            return outcome

        try:
            await self.merge_request(published.pr_number)
        except AdminError as exc:
            outcome.error = str(exc)
        else:
            outcome.merged = True
        return outcome

    def _parts_from_file(self, path: str, text: str) -> list[PartRecord]:
        try:
            part = parse_part(json.loads(text))
        except ValueError:
            part = None
        if part is None:
            logger.warning("proposed file is not a part record path=%s", path)
            return []
        return [part]

    def _parts_from_text(self, text: str) -> list[PartRecord]:
        return [part for part in (parse_part(payload) for payload in extract_json_objects(text)) if part is not None]
