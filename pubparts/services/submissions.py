from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date

from opentelemetry import trace

from pubparts.core.auth import Principal
from pubparts.core.config import Settings
from pubparts.schemas.submissions import SubmissionOut, SubmissionRequest
from pubparts.services.changeset import ChangesetBuilder
from pubparts.services.github import GitHubClient
from pubparts.services.publisher import PublishResult, PublishState, ReviewRequestPublisher
from pubparts.services.rate_limit import RateLimiter
from pubparts.services.rate_limit_store import RateLimitStoreError
from pubparts.services.validation import (
    SubmissionError,
    SuspectedBotError,
    check_honeypot,
    validate_submission,
)
from pubparts.services.vocabulary import load_vocabulary

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Publish outcomes that start the submitter's cooldown.
ACCEPTED_STATES = frozenset({PublishState.OPEN, PublishState.DEGRADED})


class SubmissionRateLimitedError(SubmissionError):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(f"Too many submissions. Please try again in {retry_after_seconds} seconds.")
        self.retry_after_seconds = retry_after_seconds


class AnonymousSubmissionError(SubmissionError):
    """Raised when the submitter cannot be identified and anonymous submissions are refused."""


class ReviewRequestError(SubmissionError):
    """Raised when the branch was pushed but the review request is not open."""

    def __init__(self, result: PublishResult) -> None:
        super().__init__(result.error or "Could not open pull request")
        self.result = result


class SubmissionPipeline:
    """honeypot -> rate limit -> validate -> changeset -> review request, for one batch."""

    def __init__(
        self,
        *,
        github: GitHubClient,
        limiter: RateLimiter,
        settings: Settings,
        builder: ChangesetBuilder,
        publisher: ReviewRequestPublisher,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.github = github
        self.limiter = limiter
        self.settings = settings
        self.builder = builder
        self.publisher = publisher
        self.today = today

    async def submit(self, request: SubmissionRequest, principal: Principal) -> SubmissionOut:
        identity = principal.subject
        try:
            check_honeypot(request)
        except SuspectedBotError:
            # Apparent success so automated submitters learn nothing.
            logger.info("honeypot filled identity=%s; submission absorbed", identity)
            return SubmissionOut(success=True)

        if principal.is_anonymous and self.settings.reject_anonymous_submissions:
            raise AnonymousSubmissionError("Unable to identify the submitter; submission refused")

        decision = await self.limiter.check(identity)
        if not decision.allowed:
            logger.info("submission throttled identity=%s retry_after=%s", identity, decision.retry_after_seconds)
            raise SubmissionRateLimitedError(decision.retry_after_seconds)

        with tracer.start_as_current_span("submission.validate"):
            vocabulary = await load_vocabulary(self.github, self.settings)
            records = validate_submission(
                request,
                vocabulary=vocabulary,
                max_batch_size=self.settings.max_batch_size,
                default_fabrication_method=self.settings.default_fabrication_method,
                today=self.today(),
            )

        changeset = await self.builder.build_submission(records)
        result = await self.publisher.publish_submission(changeset, records)
        if result.state in ACCEPTED_STATES:
            await self._record_acceptance(identity)

        logger.info(
            "submission finished identity=%s records=%s branch=%s state=%s",
            identity,
            len(records),
            changeset.branch,
            result.state.value,
        )
        if result.state is PublishState.OPEN:
            return SubmissionOut(success=True, pr_url=result.pr_url)
        if result.state is PublishState.DEGRADED:
            return SubmissionOut(success=True, manual_url=result.manual_url, warning=result.warning)
        raise ReviewRequestError(result)

    async def _record_acceptance(self, identity: str) -> None:
        try:
            await self.limiter.record(identity)
        except RateLimitStoreError:
            # The changeset is already pushed; the submitter still gets their result.
            logger.exception("failed to record rate limit timestamp identity=%s", identity)
