from __future__ import annotations

import asyncio
import base64
import json
import re

import httpx
import pytest

from conftest import FakeGitHub
from pubparts.schemas.parts import PartRecord
from pubparts.services.changeset import (
    CatalogLayout,
    ChangesetBuilder,
    ChangesetConflictError,
    ChangesetError,
    ChangesetStage,
    ChangesetUpstreamBusyError,
    ChangesetValidationError,
    insert_into_array,
    next_part_number,
    resolve_part_identifier,
)

LAYOUT = CatalogLayout()
MARKER = re.compile(LAYOUT.catalog_array_marker)


def _record(title: str = "Motor mount", url: str = "https://www.printables.com/model/555") -> PartRecord:
    return PartRecord(
        title=title,
        platform=["Meepo"],
        fabrication_method=["3d Printed"],
        type_of_part=["Mount"],
        dropbox_zip_last_updated="2026-10-17",
        external_url=url,
    )


def _builder(fake: FakeGitHub, layout: CatalogLayout = LAYOUT) -> ChangesetBuilder:
    return ChangesetBuilder(fake.client(), layout, clock=lambda: 1_700_000_000.5)


def test_next_part_number() -> None:
    names = ["part-0001.json", "part-0037.json", "part-0002.json", "README.md", "part-x.json"]
    assert next_part_number(names, pattern=LAYOUT.part_file_re) == 38
    assert next_part_number([], pattern=LAYOUT.part_file_re) == 1
    assert LAYOUT.part_filename(38) == "part-0038.json"


def test_resolve_part_identifier_accepts_numbers_and_paths() -> None:
    names = ["part-0012.json", "part-0013.json"]
    assert resolve_part_identifier("12", names, LAYOUT) == "part-0012.json"
    assert resolve_part_identifier("src/data/parts/part-0013.json", names, LAYOUT) == "part-0013.json"
    assert resolve_part_identifier("99", names, LAYOUT) is None


def test_insert_into_array_preserves_surrounding_text() -> None:
    original = (
        "import type { ItemData } from './types'\n\n"
        "const allParts = [\n"
        '  {"title": "Überbrücke"},\n'
        '  {"title": "日本語"}\n'
        "] as ItemData[]\n\n"
        "export default allParts\n"
    )

    updated = insert_into_array(original, ['{"title": "New"}'], MARKER)

    head, _, tail = updated.partition('{"title": "New"}')
    assert head == original[: original.index('{"title": "日本語"}')] + '{"title": "日本語"}' + ",\n"
    assert tail == "\n] as ItemData[]\n\nexport default allParts\n"


def test_insert_into_empty_array_has_no_leading_comma() -> None:
    updated = insert_into_array("const allParts = [\n] as ItemData[]\n", ['{"a": 1}'], MARKER)
    assert updated == 'const allParts = [\n{"a": 1}\n] as ItemData[]\n'


def test_insert_into_array_requires_marker() -> None:
    with pytest.raises(ValueError):
        insert_into_array("const allParts = []\n", ['{"a": 1}'], MARKER)


def test_files_strategy_creates_one_branch_and_commit() -> None:
    fake = FakeGitHub(
        {
            "src/data/parts/part-0001.json": "{}",
            "src/data/parts/part-0037.json": "{}",
        }
    )

    changeset = asyncio.run(_builder(fake).build_submission([_record("One"), _record("Two")]))

    assert changeset.branch == "add-parts-1700000000500"
    assert changeset.paths == ["src/data/parts/part-0038.json", "src/data/parts/part-0039.json"]
    assert fake.refs[changeset.branch] == changeset.commit_sha
    assert len(fake.commits) == 1
    assert fake.commits[0]["parents"] == ["base-sha"]
    assert fake.trees[0]["base_tree"] == "tree-of-base-sha"
    stored = json.loads(fake.blobs["blob-1"])
    assert stored["title"] == "One"
    assert stored["typeOfPart"] == ["Mount"]
    assert "isOem" not in stored


def test_files_strategy_starts_numbering_in_empty_directory() -> None:
    fake = FakeGitHub()
    changeset = asyncio.run(_builder(fake).build_submission([_record()]))
    assert changeset.branch == "add-part-1700000000500"
    assert changeset.paths == ["src/data/parts/part-0001.json"]


def test_numbering_sees_past_a_thousand_part_files() -> None:
    fake = FakeGitHub({f"src/data/parts/part-{number:04d}.json": "{}" for number in range(1, 1501)})

    changeset = asyncio.run(_builder(fake).build_submission([_record()]))

    assert changeset.paths == ["src/data/parts/part-1501.json"]
    assert fake.trees[0]["tree"][0]["path"] == "src/data/parts/part-1501.json"


class TruncatedTreeGitHub(FakeGitHub):
    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and "/git/trees/" in request.url.path:
            return httpx.Response(200, json={"sha": "base-tree", "tree": [], "truncated": True}, request=request)
        return super().__call__(request)


def test_truncated_tree_listing_refuses_to_number() -> None:
    fake = TruncatedTreeGitHub()

    with pytest.raises(ChangesetError) as exc_info:
        asyncio.run(_builder(fake).build_submission([_record()]))

    assert exc_info.value.stage is ChangesetStage.CONTENT_FETCH
    assert "truncated" in str(exc_info.value)
    assert fake.created_branches == []
    assert fake.blobs == {}


def test_branch_collision_is_a_conflict_and_touches_nothing() -> None:
    fake = FakeGitHub()
    fake.refs["add-part-1700000000500"] = "other"

    with pytest.raises(ChangesetConflictError) as exc_info:
        asyncio.run(_builder(fake).build_submission([_record()]))

    assert exc_info.value.retryable
    assert fake.blobs == {}
    assert fake.refs["add-part-1700000000500"] == "other"


def test_gateway_timeout_maps_to_busy_with_stage() -> None:
    fake = FakeGitHub()
    fake.fail("POST", "/git/blobs", 504)

    with pytest.raises(ChangesetUpstreamBusyError) as exc_info:
        asyncio.run(_builder(fake).build_submission([_record()]))

    assert exc_info.value.stage is ChangesetStage.BLOB_CREATE
    assert str(exc_info.value) == "GitHub is busy right now, please try again in a moment"


def test_array_strategy_appends_to_catalog_file() -> None:
    catalog = 'const allParts = [\n  {"title": "Existing"}\n] as ItemData[]\n'
    fake = FakeGitHub({"src/util/parts.ts": catalog})
    layout = CatalogLayout(strategy="array")

    changeset = asyncio.run(_builder(fake, layout).build_submission([_record("Appended")]))

    assert changeset.paths == ["src/util/parts.ts"]
    put = fake.put_files[0]
    assert put["branch"] == changeset.branch
    assert put["sha"] == "sha-src/util/parts.ts"
    written = base64.b64decode(put["content"]).decode("utf-8")
    assert written.startswith('const allParts = [\n  {"title": "Existing"},\n{\n  "title": "Appended"')
    assert written.endswith("}\n] as ItemData[]\n")
    assert fake.commits == []


def test_admin_batch_deletes_and_replaces_categories() -> None:
    fake = FakeGitHub(
        {
            "src/data/parts/part-0001.json": "{}",
            "src/data/parts/part-0002.json": "{}",
        }
    )

    changeset = asyncio.run(
        _builder(fake).build_admin_batch(delete_ids=["2"], categories=["Deck", "deck", " Motor "])
    )

    assert changeset.branch == "admin-batch-1700000000500"
    tree = fake.trees[0]["tree"]
    assert {"path": "src/data/parts/part-0002.json", "mode": "100644", "type": "blob", "sha": None} in tree
    assert json.loads(fake.blobs["blob-1"]) == ["Deck", "Motor"]


def test_admin_batch_rejects_unknown_entries_before_branching() -> None:
    fake = FakeGitHub({"src/data/parts/part-0001.json": "{}"})

    with pytest.raises(ChangesetValidationError, match="unknown catalog entries: 9"):
        asyncio.run(_builder(fake).build_admin_batch(delete_ids=["9"], categories=None))

    assert fake.created_branches == []
