from pubparts.schemas.parts import CatalogEntry, PartRecord
from pubparts.services.audit import find_duplicate_groups


def _entry(entry_id: str, url: str) -> CatalogEntry:
    part = PartRecord(
        title=f"Part {entry_id}",
        platform=["Meepo"],
        fabrication_method=["3d Printed"],
        type_of_part=["Mount"],
        external_url=url,
    )
    return CatalogEntry(entry_id=entry_id, path=f"src/data/parts/{entry_id}", part=part)


def test_groups_marketplace_variants_under_one_key() -> None:
    entries = [
        _entry("part-0003.json", "https://printables.com/model/555?lang=de"),
        _entry("part-0001.json", "https://www.printables.com/model/555-motor-mount"),
        _entry("part-0002.json", "https://example.com/unique"),
    ]

    groups = find_duplicate_groups(entries)

    assert list(groups) == ["printables-555"]
    assert [entry.entry_id for entry in groups["printables-555"]] == ["part-0001.json", "part-0003.json"]


def test_no_groups_for_distinct_entries_and_blank_urls() -> None:
    entries = [
        _entry("part-0001.json", "https://example.com/a"),
        _entry("part-0002.json", "https://example.com/b"),
        _entry("part-0003.json", ""),
        _entry("part-0004.json", " "),
    ]

    assert find_duplicate_groups(entries) == {}
