from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from opentelemetry import trace

from pubparts.schemas.parts import PartRecord
from pubparts.services.changeset import Changeset
from pubparts.services.github import (
    GitHubClient,
    GitHubError,
    GitHubForbiddenError,
    GitHubRateLimitedError,
    GitHubValidationError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MANUAL_WARNING = (
    "Your submission was saved to branch {branch}, but the pull request could not be opened "
    "automatically. Open the link to finish it manually."
)
RETRY_LATER_ERROR = (
    "GitHub is rate limiting pull request creation right now (this is not the submission cooldown). "
    "Your changes were saved; open the link to finish the pull request, or try again later."
)


class PublishState(str, Enum):
    OPEN = "open"
    DEGRADED = "degraded"
    RETRY_LATER = "retry_later"
    FAILED = "failed"


@dataclass(slots=True)
class PublishResult:
    state: PublishState
    manual_url: str
    pr_url: str | None = None
    pr_number: int | None = None
    warning: str | None = None
    error: str | None = None

    @property
    def completed(self) -> bool:
        """True when the submitter needs no manual step to finish the request."""
        return self.state is PublishState.OPEN


class ReviewRequestPublisher:
    def __init__(self, github: GitHubClient, *, base_branch: str, web_url: str = "https://github.com") -> None:
        self.github = github
        self.base_branch = base_branch
        self.web_url = web_url.rstrip("/")

    def manual_compare_url(self, branch: str) -> str:
        return (
            f"{self.web_url}/{self.github.owner}/{self.github.repo}"
            f"/compare/{self.base_branch}...{branch}?expand=1"
        )

    async def publish(self, changeset: Changeset, *, title: str, body: str) -> PublishResult:
        manual_url = self.manual_compare_url(changeset.branch)
        with tracer.start_as_current_span("review.publish") as span:
            span.set_attribute("review.branch", changeset.branch)
            try:
                pull = await self.github.create_pull(
                    title=title,
                    head=changeset.branch,
                    base=self.base_branch,
                    body=body,
                )
            except (GitHubForbiddenError, GitHubValidationError) as exc:
                logger.warning("pull request creation rejected branch=%s error=%s; returning manual link", changeset.branch, exc)
                span.set_attribute("review.state", PublishState.DEGRADED.value)
                return PublishResult(
                    state=PublishState.DEGRADED,
                    manual_url=manual_url,
                    warning=MANUAL_WARNING.format(branch=changeset.branch),
                )
            except GitHubRateLimitedError as exc:
                logger.warning("pull request creation throttled branch=%s error=%s", changeset.branch, exc)
                span.set_attribute("review.state", PublishState.RETRY_LATER.value)
                return PublishResult(
                    state=PublishState.RETRY_LATER,
                    manual_url=manual_url,
                    error=RETRY_LATER_ERROR,
                )
            except GitHubError as exc:
                # The pushed branch is left in place for manual recovery.
                logger.error("pull request creation failed branch=%s error=%s", changeset.branch, exc)
                span.set_attribute("review.state", PublishState.FAILED.value)
                return PublishResult(
                    state=PublishState.FAILED,
                    manual_url=manual_url,
                    error=f"Could not open pull request: {exc}",
                )

            span.set_attribute("review.state", PublishState.OPEN.value)

        logger.info("pull request opened number=%s branch=%s", pull.get("number"), changeset.branch)
        return PublishResult(
            state=PublishState.OPEN,
            manual_url=manual_url,
            pr_url=pull.get("html_url"),
            pr_number=pull.get("number"),
        )

    async def publish_submission(self, changeset: Changeset, records: list[PartRecord]) -> PublishResult:
        return await self.publish(changeset, title=submission_title(records), body=submission_body(records))


def submission_title(records: list[PartRecord]) -> str:
    if len(records) == 1:
        return f"Add part: {records[0].title}"
    titles = ", ".join(record.title for record in records[:3])
    if len(records) > 3:
        titles += ", ..."
    return f"Add {len(records)} parts: {titles}"


def submission_body(records: list[PartRecord]) -> str:
    lines = [f"Community submission of {len(records)} part(s).", ""]
    for number, record in enumerate(records, start=1):
        lines.append(f"{number}. **{record.title}**: {record.external_url}")
        lines.append(f"   - Platform: {', '.join(record.platform)}")
        lines.append(f"   - Type: {', '.join(record.type_of_part)}")
        if record.dropbox_url:
            lines.append(f"   - Mirror: {record.dropbox_url}")
    return "\n".join(lines) + "\n"
