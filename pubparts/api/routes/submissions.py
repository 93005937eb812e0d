from fastapi import APIRouter, Depends, HTTPException, status

from pubparts.core.auth import Principal
from pubparts.core.config import Settings, get_settings
from pubparts.core.security import get_submitter_principal
from pubparts.schemas.submissions import SubmissionRequest
from pubparts.services.changeset import (
    CatalogLayout,
    ChangesetBaseRefMissingError,
    ChangesetBuilder,
    ChangesetConflictError,
    ChangesetError,
    ChangesetRateLimitedError,
    ChangesetUpstreamBusyError,
)
from pubparts.services.github import GitHubClient, get_github_client
from pubparts.services.publisher import PublishState, ReviewRequestPublisher
from pubparts.services.rate_limit import RateLimiter
from pubparts.services.rate_limit_store import RateLimitStore, RateLimitStoreUnavailableError, get_rate_limit_store
from pubparts.services.submissions import (
    AnonymousSubmissionError,
    ReviewRequestError,
    SubmissionPipeline,
    SubmissionRateLimitedError,
)
from pubparts.services.validation import SubmissionValidationError

router = APIRouter()


@router.post("")
async def submit_parts(
    payload: SubmissionRequest,
    principal: Principal = Depends(get_submitter_principal),
    settings: Settings = Depends(get_settings),
    github: GitHubClient = Depends(get_github_client),
    store: RateLimitStore = Depends(get_rate_limit_store),
) -> dict:
    if not settings.github_token:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="submission service is not configured",
        )

    layout = CatalogLayout.from_settings(settings)
    pipeline = SubmissionPipeline(
        github=github,
        limiter=RateLimiter(store, window_ms=settings.rate_limit_window_seconds * 1000),
        settings=settings,
        builder=ChangesetBuilder(github, layout),
        publisher=ReviewRequestPublisher(github, base_branch=layout.base_branch, web_url=settings.github_web_url),
    )

    try:
        outcome = await pipeline.submit(payload, principal)
    except SubmissionValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except AnonymousSubmissionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except SubmissionRateLimitedError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc
    except RateLimitStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ChangesetConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ChangesetUpstreamBusyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ChangesetRateLimitedError as exc:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)) from exc
    except ChangesetBaseRefMissingError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except ChangesetError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except ReviewRequestError as exc:
        status_code = (
            status.HTTP_429_TOO_MANY_REQUESTS
            if exc.result.state is PublishState.RETRY_LATER
            else status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        raise HTTPException(
            status_code=status_code,
            detail={"error": str(exc), "manualUrl": exc.result.manual_url},
        ) from exc

    return outcome.to_body()
