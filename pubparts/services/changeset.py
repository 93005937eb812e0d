from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from opentelemetry import trace

from pubparts.core.config import Settings
from pubparts.schemas.parts import PartRecord
from pubparts.services.github import (
    GitHubClient,
    GitHubError,
    GitHubNotFoundError,
    GitHubRateLimitedError,
    GitHubUnavailableError,
    GitHubValidationError,
)
from pubparts.services.vocabulary import clean_categories, serialize_categories

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CatalogStrategy = Literal["files", "array"]

FILE_MODE = "100644"
FRESH_ARRAY_CATALOG = "const allParts = [\n{entries}\n] as ItemData[]\n\nexport default allParts\n"


class ChangesetStage(str, Enum):
    REF_LOOKUP = "ref_lookup"
    BRANCH_CHECK = "branch_check"
    BRANCH_CREATE = "branch_create"
    CONTENT_FETCH = "content_fetch"
    BLOB_CREATE = "blob_create"
    TREE_CREATE = "tree_create"
    COMMIT_CREATE = "commit_create"
    REF_UPDATE = "ref_update"
    FILE_UPDATE = "file_update"


class ChangesetError(Exception):
    """Base changeset error; ``stage`` names the step that failed."""

    retryable = False

    def __init__(self, stage: ChangesetStage, message: str) -> None:
        super().__init__(message)
        self.stage = stage


class ChangesetConflictError(ChangesetError):
    """Raised when the generated branch name is already taken."""

    retryable = True


class ChangesetBaseRefMissingError(ChangesetError):
    """Raised when the base branch cannot be found."""


class ChangesetUpstreamBusyError(ChangesetError):
    """Raised on hosting API gateway errors and timeouts."""

    retryable = True


class ChangesetRateLimitedError(ChangesetError):
    """Raised when the hosting API throttles the service token."""

    retryable = True


class ChangesetValidationError(ChangesetError):
    """Raised when an admin batch references content that does not exist."""


@dataclass(slots=True)
class Changeset:
    branch: str
    base_branch: str
    base_sha: str
    commit_sha: str
    paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CatalogLayout:
    base_branch: str = "master"
    strategy: CatalogStrategy = "files"
    parts_dir: str = "src/data/parts"
    part_file_prefix: str = "part-"
    part_id_width: int = 4
    catalog_path: str = "src/util/parts.ts"
    catalog_array_marker: str = r"\]\s*as\s*ItemData\[\]"
    categories_path: str = "src/data/categories.json"

    @classmethod
    def from_settings(cls, settings: Settings) -> CatalogLayout:
        strategy: CatalogStrategy = "array" if settings.catalog_strategy == "array" else "files"
        return cls(
            base_branch=settings.github_base_branch,
            strategy=strategy,
            parts_dir=settings.parts_dir.strip("/"),
            part_file_prefix=settings.part_file_prefix,
            part_id_width=settings.part_id_width,
            catalog_path=settings.catalog_path,
            catalog_array_marker=settings.catalog_array_marker,
            categories_path=settings.categories_path,
        )

    @property
    def part_file_re(self) -> re.Pattern[str]:
        return re.compile(rf"^{re.escape(self.part_file_prefix)}(\d+)\.json$")

    def part_filename(self, number: int) -> str:
        return f"{self.part_file_prefix}{number:0{self.part_id_width}d}.json"

    def part_path(self, filename: str) -> str:
        return f"{self.parts_dir}/{filename}"


def next_part_number(names: Iterable[str], *, pattern: re.Pattern[str]) -> int:
    highest = 0
    for name in names:
        match = pattern.match(name)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


def serialize_record(record: PartRecord) -> str:
    return json.dumps(record.to_content(), indent=2, ensure_ascii=False) + "\n"


def insert_into_array(text: str, entries: list[str], marker: re.Pattern[str]) -> str:
    """Insert serialized entries right before the closing-array marker.

    Everything outside the insertion point is kept byte for byte.
    """
    match = marker.search(text)
    if match is None:
        raise ValueError("catalog file has no closing-array marker")

    head = text[: match.start()].rstrip()
    separator = "\n" if head.endswith(("[", ",")) else ",\n"
    body = ",\n".join(entries)
    return f"{head}{separator}{body}\n{text[match.start():]}"


def resolve_part_identifier(identifier: str, names: Iterable[str], layout: CatalogLayout) -> str | None:
    """Map ``part-0012.json``, ``0012``, ``12`` or a full path onto an existing file name."""
    candidate = identifier.strip().rsplit("/", maxsplit=1)[-1]
    existing = set(names)
    if candidate in existing:
        return candidate
    if candidate.isdigit():
        filename = layout.part_filename(int(candidate))
        if filename in existing:
            return filename
    return None


def _translate(stage: ChangesetStage, exc: GitHubError) -> ChangesetError:
    if isinstance(exc, GitHubUnavailableError):
        return ChangesetUpstreamBusyError(stage, "GitHub is busy right now, please try again in a moment")
    if isinstance(exc, GitHubRateLimitedError):
        return ChangesetRateLimitedError(stage, "GitHub API rate limit reached, please try again later")
    return ChangesetError(stage, f"{stage.value} failed: {exc}")


@contextmanager
def _stage(stage: ChangesetStage) -> Iterator[None]:
    try:
        yield
    except GitHubError as exc:
        raise _translate(stage, exc) from exc


class ChangesetBuilder:
    def __init__(
        self,
        github: GitHubClient,
        layout: CatalogLayout,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.github = github
        self.layout = layout
        self.clock = clock

    async def build_submission(self, records: list[PartRecord]) -> Changeset:
        if not records:
            raise ChangesetValidationError(ChangesetStage.CONTENT_FETCH, "no records to commit")

        prefix = "add-part" if len(records) == 1 else "add-parts"
        message = _submission_message(records)
        with tracer.start_as_current_span("changeset.build") as span:
            span.set_attribute("changeset.strategy", self.layout.strategy)
            span.set_attribute("changeset.records", len(records))
            base_sha = await self._resolve_base()
            if self.layout.strategy == "array":
                branch = await self._create_branch(prefix, base_sha)
                commit_sha, paths = await self._append_to_array(branch, base_sha, records, message)
            else:
                paths = self._plan_part_paths(await self._list_part_names(base_sha), len(records))
                branch = await self._create_branch(prefix, base_sha)
                commit_sha = await self._write_part_files(branch, base_sha, paths, records, message)
            span.set_attribute("changeset.branch", branch)

        logger.info(
            "changeset created branch=%s base_sha=%s commit_sha=%s records=%s",
            branch,
            base_sha,
            commit_sha,
            len(records),
        )
        return Changeset(
            branch=branch,
            base_branch=self.layout.base_branch,
            base_sha=base_sha,
            commit_sha=commit_sha,
            paths=paths,
        )

    async def build_admin_batch(
        self,
        *,
        delete_ids: list[str],
        categories: list[str] | None,
    ) -> Changeset:
        if not delete_ids and categories is None:
            raise ChangesetValidationError(ChangesetStage.CONTENT_FETCH, "admin batch has nothing to change")
        if delete_ids and self.layout.strategy != "files":
            raise ChangesetValidationError(
                ChangesetStage.CONTENT_FETCH,
                "deleting entries requires the one-file-per-record catalog",
            )

        base_sha = await self._resolve_base()
        entries: list[dict[str, Any]] = []
        deleted: list[str] = []

        if delete_ids:
            names = await self._list_part_names(base_sha)
            unknown: list[str] = []
            for identifier in delete_ids:
                filename = resolve_part_identifier(identifier, names, self.layout)
                if filename is None:
                    unknown.append(identifier)
                    continue
                path = self.layout.part_path(filename)
                if path not in deleted:
                    deleted.append(path)
            if unknown:
                raise ChangesetValidationError(
                    ChangesetStage.CONTENT_FETCH,
                    f"unknown catalog entries: {', '.join(unknown)}",
                )
            entries.extend({"path": path, "mode": FILE_MODE, "type": "blob", "sha": None} for path in deleted)

        message_parts: list[str] = []
        if deleted:
            message_parts.append(f"delete {len(deleted)} part(s)")
        if categories is not None:
            cleaned = clean_categories(categories)
            if not cleaned:
                raise ChangesetValidationError(ChangesetStage.CONTENT_FETCH, "category list must not be empty")
            with _stage(ChangesetStage.BLOB_CREATE):
                blob_sha = await self.github.create_blob(serialize_categories(cleaned))
            entries.append({"path": self.layout.categories_path, "mode": FILE_MODE, "type": "blob", "sha": blob_sha})
            message_parts.append(f"replace categories ({len(cleaned)})")

        branch = await self._create_branch("admin-batch", base_sha)
        message = f"Admin batch: {', '.join(message_parts)}"
        commit_sha = await self._commit_entries(branch, base_sha, entries, message)
        logger.info("admin changeset created branch=%s deleted=%s categories=%s", branch, len(deleted), categories is not None)
        return Changeset(
            branch=branch,
            base_branch=self.layout.base_branch,
            base_sha=base_sha,
            commit_sha=commit_sha,
            paths=[entry["path"] for entry in entries],
        )

    async def _resolve_base(self) -> str:
        try:
            return await self.github.get_branch_sha(self.layout.base_branch)
        except GitHubNotFoundError as exc:
            raise ChangesetBaseRefMissingError(
                ChangesetStage.REF_LOOKUP,
                f"base branch {self.layout.base_branch!r} not found",
            ) from exc
        except GitHubError as exc:
            raise _translate(ChangesetStage.REF_LOOKUP, exc) from exc

    async def _create_branch(self, prefix: str, base_sha: str) -> str:
        branch = f"{prefix}-{int(self.clock() * 1000)}"
        with _stage(ChangesetStage.BRANCH_CHECK):
            exists = await self.github.branch_exists(branch)
        if exists:
            raise ChangesetConflictError(ChangesetStage.BRANCH_CHECK, f"branch {branch} already exists, please retry")

        try:
            await self.github.create_branch(branch, base_sha)
        except GitHubValidationError as exc:
            # 422 "Reference already exists" when another request won the race.
            raise ChangesetConflictError(ChangesetStage.BRANCH_CREATE, f"branch {branch} already exists, please retry") from exc
        except GitHubError as exc:
            raise _translate(ChangesetStage.BRANCH_CREATE, exc) from exc
        return branch

    async def _list_part_names(self, ref: str) -> list[str]:
        try:
            listing = await self.github.list_tree_files(self.layout.parts_dir, ref=ref)
        except GitHubError as exc:
            raise _translate(ChangesetStage.CONTENT_FETCH, exc) from exc
        return [item["name"] for item in listing if item.get("type") == "file"]

    def _plan_part_paths(self, names: list[str], count: int) -> list[str]:
        existing = set(names)
        first_number = next_part_number(names, pattern=self.layout.part_file_re)
        filenames = [self.layout.part_filename(first_number + offset) for offset in range(count)]
        taken = [filename for filename in filenames if filename in existing]
        if taken:
            # Never overwrite a published record through the base tree.
            raise ChangesetConflictError(
                ChangesetStage.CONTENT_FETCH,
                f"catalog file(s) already exist: {', '.join(taken)}, please retry",
            )
        return [self.layout.part_path(filename) for filename in filenames]

    async def _write_part_files(
        self,
        branch: str,
        base_sha: str,
        paths: list[str],
        records: list[PartRecord],
        message: str,
    ) -> str:
        entries: list[dict[str, Any]] = []
        for path, record in zip(paths, records):
            with _stage(ChangesetStage.BLOB_CREATE):
                blob_sha = await self.github.create_blob(serialize_record(record))
            entries.append({"path": path, "mode": FILE_MODE, "type": "blob", "sha": blob_sha})
        return await self._commit_entries(branch, base_sha, entries, message)

    async def _append_to_array(
        self,
        branch: str,
        base_sha: str,
        records: list[PartRecord],
        message: str,
    ) -> tuple[str, list[str]]:
        path = self.layout.catalog_path
        serialized = [serialize_record(record).rstrip("\n") for record in records]
        try:
            text, file_sha = await self.github.read_file(path, ref=base_sha)
        except GitHubNotFoundError:
            text, file_sha = None, None
        except GitHubError as exc:
            raise _translate(ChangesetStage.CONTENT_FETCH, exc) from exc

        if text is None:
            updated = FRESH_ARRAY_CATALOG.format(entries=",\n".join(serialized))
        else:
            try:
                updated = insert_into_array(text, serialized, re.compile(self.layout.catalog_array_marker))
            except ValueError as exc:
                raise ChangesetError(ChangesetStage.CONTENT_FETCH, f"{path}: {exc}") from exc

        with _stage(ChangesetStage.FILE_UPDATE):
            commit_sha = await self.github.put_file(path, text=updated, branch=branch, message=message, sha=file_sha)
        return commit_sha, [path]

    async def _commit_entries(
        self,
        branch: str,
        base_sha: str,
        entries: list[dict[str, Any]],
        message: str,
    ) -> str:
        with _stage(ChangesetStage.TREE_CREATE):
            base_tree = await self.github.get_commit_tree_sha(base_sha)
            tree_sha = await self.github.create_tree(base_tree, entries)
        with _stage(ChangesetStage.COMMIT_CREATE):
            commit_sha = await self.github.create_commit(message=message, tree=tree_sha, parents=[base_sha])
        with _stage(ChangesetStage.REF_UPDATE):
            await self.github.update_branch(branch, commit_sha)
        return commit_sha


def _submission_message(records: list[PartRecord]) -> str:
    if len(records) == 1:
        return f"Add part: {records[0].title}"
    return f"Add {len(records)} parts: {', '.join(record.title for record in records)}"
