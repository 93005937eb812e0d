from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from pubparts.schemas.parts import CatalogEntry, PartRecord

PublishStateOut = Literal["open", "degraded", "retry_later", "failed"]


class ReviewRequestOut(BaseModel):
    number: int
    title: str
    author: str | None = None
    body: str | None = None
    created_at: datetime | None = None
    html_url: str | None = None
    branch: str | None = None


class ReviewRequestContentOut(BaseModel):
    number: int
    files: list[str] = Field(default_factory=list)
    parts: list[PartRecord] = Field(default_factory=list)


class MergeRequest(BaseModel):
    pull_number: int = Field(ge=1)


class MergeOut(BaseModel):
    success: bool = True
    number: int
    sha: str | None = None
    message: str | None = None


class BatchActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merge_prs: list[int] = Field(default_factory=list, alias="mergePrs")
    delete_files: list[str] = Field(default_factory=list, alias="deleteFiles")
    update_categories: list[str] | None = Field(default=None, alias="updateCategories")


class BatchMergeOutcomeOut(BaseModel):
    number: int
    merged: bool
    error: str | None = None


class BatchChangesetOut(BaseModel):
    state: PublishStateOut
    branch: str | None = None
    pr_url: str | None = None
    manual_url: str | None = None
    merged: bool = False
    warning: str | None = None
    error: str | None = None


class BatchActionOut(BaseModel):
    success: bool
    merges: list[BatchMergeOutcomeOut] = Field(default_factory=list)
    changeset: BatchChangesetOut | None = None


class DuplicateGroupOut(BaseModel):
    key: str
    entries: list[CatalogEntry]


class CategoriesOut(BaseModel):
    categories: list[str]
    source: Literal["repository", "default"]
