from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from pubparts.core.config import Settings
from pubparts.schemas.parts import OEM_TAG
from pubparts.services.github import GitHubClient, GitHubError, GitHubNotFoundError

logger = logging.getLogger(__name__)

VocabularySource = Literal["repository", "default"]


@dataclass(slots=True)
class CatalogVocabulary:
    platforms: list[str]
    categories: list[str]
    source: VocabularySource = "default"
    _platform_index: dict[str, str] = field(init=False, repr=False)
    _category_index: dict[str, str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._platform_index = {value.casefold(): value for value in self.platforms}
        self._category_index = {value.casefold(): value for value in self.categories}
        self._category_index.setdefault(OEM_TAG.casefold(), OEM_TAG)

    def canonical_platform(self, value: str) -> str | None:
        return self._platform_index.get(value.casefold())

    def canonical_category(self, value: str) -> str | None:
        return self._category_index.get(value.casefold())


def parse_categories(text: str) -> list[str]:
    """Accept either a bare JSON array or ``{"categories": [...]}``."""
    decoded: Any = json.loads(text)
    if isinstance(decoded, dict):
        decoded = decoded.get("categories")
    if not isinstance(decoded, list):
        raise ValueError("category file must hold a JSON array of strings")
    return clean_categories(decoded)


def clean_categories(values: list[Any]) -> list[str]:
    cleaned: list[str] = []
    seen: set[str] = set()
    for value in values:
        if not isinstance(value, str):
            continue
        stripped = value.strip()
        if not stripped or stripped.casefold() in seen:
            continue
        seen.add(stripped.casefold())
        cleaned.append(stripped)
    return cleaned


def serialize_categories(categories: list[str]) -> str:
    return json.dumps(categories, indent=2, ensure_ascii=False) + "\n"


async def load_vocabulary(github: GitHubClient, settings: Settings, *, ref: str | None = None) -> CatalogVocabulary:
    ref = ref or settings.github_base_branch
    try:
        text, _ = await github.read_file(settings.categories_path, ref=ref)
        categories = parse_categories(text)
    except GitHubNotFoundError:
        categories = []
    except (GitHubError, ValueError) as exc:
        logger.warning(
            "category vocabulary unreadable path=%s ref=%s error=%s; using defaults",
            settings.categories_path,
            ref,
            exc,
        )
        categories = []

    if categories:
        return CatalogVocabulary(platforms=list(settings.platforms), categories=categories, source="repository")
    return CatalogVocabulary(
        platforms=list(settings.platforms),
        categories=list(settings.default_categories),
        source="default",
    )
