from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

OEM_TAG = "OEM"


def _as_tag_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class PartRecordIn(BaseModel):
    """Part as typed into the submission form; every field may be missing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    title: str | None = None
    image_src: str | None = None
    platform: list[str] = Field(default_factory=list)
    fabrication_method: list[str] = Field(default_factory=list)
    type_of_part: list[str] = Field(default_factory=list)
    dropbox_url: str | None = None
    dropbox_zip_last_updated: str | None = None
    external_url: str | None = None
    is_oem: bool | None = None

    @field_validator("platform", "fabrication_method", "type_of_part", mode="before")
    @classmethod
    def _coerce_tags(cls, value: Any) -> Any:
        return _as_tag_list(value)


class PartRecord(BaseModel):
    """A catalog entry in the shape it is persisted upstream."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    title: str
    image_src: str = ""
    platform: list[str]
    fabrication_method: list[str]
    type_of_part: list[str]
    dropbox_url: str = ""
    dropbox_zip_last_updated: str = ""
    external_url: str
    is_oem: bool | None = None

    @field_validator("platform", "fabrication_method", "type_of_part", mode="before")
    @classmethod
    def _coerce_tags(cls, value: Any) -> Any:
        return _as_tag_list(value)

    def to_content(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CatalogEntry(BaseModel):
    entry_id: str
    path: str
    part: PartRecord
