from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pubparts.schemas.parts import PartRecordIn


class SubmissionRequest(BaseModel):
    """Batch submission body.

    ``printablesUrl``/``editedPart`` is the older single-part form and is folded
    into ``parts`` before validation.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    parts: list[PartRecordIn] | None = None
    hp_field: str | None = None
    printables_url: str | None = Field(default=None, alias="printablesUrl")
    edited_part: PartRecordIn | None = Field(default=None, alias="editedPart")


class SubmissionOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    pr_url: str | None = Field(default=None, serialization_alias="prUrl")
    manual_url: str | None = Field(default=None, serialization_alias="manualUrl")
    warning: str | None = None

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
