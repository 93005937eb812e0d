from pydantic import BaseModel, Field


class ResolveAttemptOut(BaseModel):
    strategy: str
    target: str
    status_code: int | None = None
    snippet: str | None = None
    error: str | None = None


class ScrapeOut(BaseModel):
    success: bool
    title: str | None = None
    description: str | None = None
    image: str | None = None
    tags: list[str] = Field(default_factory=list)
    source: str | None = None
    error: str | None = None
    attempts: list[ResolveAttemptOut] = Field(default_factory=list)
