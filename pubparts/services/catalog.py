from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from pubparts.schemas.parts import CatalogEntry, PartRecord
from pubparts.services.changeset import CatalogLayout
from pubparts.services.github import GitHubClient, GitHubNotFoundError

logger = logging.getLogger(__name__)


def extract_json_objects(text: str) -> list[dict[str, Any]]:
    """Top-level JSON objects embedded in arbitrary text (TS source, diff hunks)."""
    decoder = json.JSONDecoder()
    objects: list[dict[str, Any]] = []
    index = 0
    while True:
        start = text.find("{", index)
        if start == -1:
            return objects
        try:
            value, end = decoder.raw_decode(text, start)
        except ValueError:
            index = start + 1
            continue
        if isinstance(value, dict):
            objects.append(value)
        index = end


def parse_part(payload: Any) -> PartRecord | None:
    try:
        return PartRecord.model_validate(payload)
    except ValidationError:
        return None


def added_lines(patch: str) -> str:
    lines = [
        line[1:]
        for line in patch.splitlines()
        if line.startswith("+") and not line.startswith("+++")
    ]
    return "\n".join(lines)


class CatalogReader:
    """Reads the current catalog snapshot from the hosting API."""

    def __init__(self, github: GitHubClient, layout: CatalogLayout) -> None:
        self.github = github
        self.layout = layout

    async def load_entries(self, *, ref: str | None = None) -> list[CatalogEntry]:
        ref = ref or self.layout.base_branch
        if self.layout.strategy == "array":
            return await self._load_array(ref)
        return await self._load_files(ref)

    async def _load_files(self, ref: str) -> list[CatalogEntry]:
        try:
            listing = await self.github.list_tree_files(self.layout.parts_dir, ref=ref)
        except GitHubNotFoundError:
            return []

        pattern = self.layout.part_file_re
        entries: list[CatalogEntry] = []
        for item in sorted(listing, key=lambda row: row.get("name", "")):
            name = item.get("name", "")
            if item.get("type") != "file" or not pattern.match(name):
                continue
            path = item.get("path") or self.layout.part_path(name)
            text, _ = await self.github.read_file(path, ref=ref)
            try:
                part = parse_part(json.loads(text))
            except ValueError:
                part = None
            if part is None:
                logger.warning("skipping unreadable catalog file path=%s", path)
                continue
            entries.append(CatalogEntry(entry_id=name, path=path, part=part))
        return entries

    async def _load_array(self, ref: str) -> list[CatalogEntry]:
        path = self.layout.catalog_path
        try:
            text, _ = await self.github.read_file(path, ref=ref)
        except GitHubNotFoundError:
            return []

        entries: list[CatalogEntry] = []
        for index, payload in enumerate(extract_json_objects(text)):
            part = parse_part(payload)
            if part is not None:
                entries.append(CatalogEntry(entry_id=f"{path}#{index}", path=path, part=part))
        return entries
