from __future__ import annotations

from collections.abc import Iterable

from pubparts.core.urls import duplicate_key
from pubparts.schemas.parts import CatalogEntry


def find_duplicate_groups(entries: Iterable[CatalogEntry]) -> dict[str, list[CatalogEntry]]:
    """Group catalog entries whose external URLs normalize to the same key.

    Only keys shared by two or more entries are returned. Two distinct items
    that happen to share a key show up as a false positive for a human to
    dismiss.
    """
    groups: dict[str, list[CatalogEntry]] = {}
    for entry in entries:
        if not entry.part.external_url.strip():
            continue
        groups.setdefault(duplicate_key(entry.part.external_url), []).append(entry)

    return {
        key: sorted(members, key=lambda member: member.entry_id)
        for key, members in sorted(groups.items())
        if len(members) > 1
    }
