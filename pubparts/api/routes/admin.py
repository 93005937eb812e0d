from fastapi import APIRouter, Depends, HTTPException, status

from pubparts.core.config import Settings, get_settings
from pubparts.core.security import get_admin_principal
from pubparts.schemas.admin import (
    BatchActionOut,
    BatchActionRequest,
    BatchChangesetOut,
    BatchMergeOutcomeOut,
    CategoriesOut,
    DuplicateGroupOut,
    MergeOut,
    MergeRequest,
    ReviewRequestContentOut,
    ReviewRequestOut,
)
from pubparts.services.admin import (
    AdminConflictError,
    AdminConsole,
    AdminError,
    AdminNotFoundError,
    AdminUnavailableError,
    AdminValidationError,
)
from pubparts.services.catalog import CatalogReader
from pubparts.services.changeset import CatalogLayout, ChangesetBuilder
from pubparts.services.github import GitHubClient, get_github_client
from pubparts.services.publisher import ReviewRequestPublisher
from pubparts.services.vocabulary import load_vocabulary

router = APIRouter(dependencies=[Depends(get_admin_principal)])


def get_admin_console(
    settings: Settings = Depends(get_settings),
    github: GitHubClient = Depends(get_github_client),
) -> AdminConsole:
    if not settings.github_token:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin console is not configured",
        )
    layout = CatalogLayout.from_settings(settings)
    return AdminConsole(
        github,
        layout,
        builder=ChangesetBuilder(github, layout),
        publisher=ReviewRequestPublisher(github, base_branch=layout.base_branch, web_url=settings.github_web_url),
        reader=CatalogReader(github, layout),
    )


def _http_error(exc: AdminError) -> HTTPException:
    if isinstance(exc, AdminNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AdminConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, AdminValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, AdminUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.get("/list-prs", response_model=list[ReviewRequestOut])
async def list_review_requests(console: AdminConsole = Depends(get_admin_console)) -> list[ReviewRequestOut]:
    try:
        rows = await console.list_open_requests()
    except AdminError as exc:
        raise _http_error(exc) from exc
    return [ReviewRequestOut(**row) for row in rows]


@router.get("/pr-content/{number}", response_model=ReviewRequestContentOut)
async def get_review_request_content(
    number: int,
    console: AdminConsole = Depends(get_admin_console),
) -> ReviewRequestContentOut:
    try:
        files, parts = await console.get_request_content(number)
    except AdminError as exc:
        raise _http_error(exc) from exc
    return ReviewRequestContentOut(number=number, files=files, parts=parts)


@router.post("/merge-pr", response_model=MergeOut)
async def merge_review_request(
    payload: MergeRequest,
    console: AdminConsole = Depends(get_admin_console),
) -> MergeOut:
    try:
        result = await console.merge_request(payload.pull_number)
    except AdminError as exc:
        raise _http_error(exc) from exc
    return MergeOut(number=payload.pull_number, sha=result.get("sha"), message=result.get("message"))


@router.post("/batch-action", response_model=BatchActionOut)
async def run_batch_action(
    payload: BatchActionRequest,
    console: AdminConsole = Depends(get_admin_console),
) -> BatchActionOut:
    try:
        result = await console.batch_action(
            merge_prs=payload.merge_prs,
            delete_files=payload.delete_files,
            categories=payload.update_categories,
        )
    except AdminError as exc:
        raise _http_error(exc) from exc

    changeset = None
    if result.changeset is not None:
        changeset = BatchChangesetOut(
            state=result.changeset.state,
            branch=result.changeset.branch,
            pr_url=result.changeset.pr_url,
            manual_url=result.changeset.manual_url,
            merged=result.changeset.merged,
            warning=result.changeset.warning,
            error=result.changeset.error,
        )
    return BatchActionOut(
        success=result.success,
        merges=[
            BatchMergeOutcomeOut(number=outcome.number, merged=outcome.merged, error=outcome.error)
            for outcome in result.merges
        ],
        changeset=changeset,
    )


@router.get("/duplicates", response_model=list[DuplicateGroupOut])
async def list_duplicates(console: AdminConsole = Depends(get_admin_console)) -> list[DuplicateGroupOut]:
    try:
        groups = await console.find_duplicates()
    except AdminError as exc:
        raise _http_error(exc) from exc
    return [DuplicateGroupOut(key=key, entries=entries) for key, entries in groups.items()]


@router.get("/categories", response_model=CategoriesOut)
async def get_categories(
    settings: Settings = Depends(get_settings),
    console: AdminConsole = Depends(get_admin_console),
) -> CategoriesOut:
    vocabulary = await load_vocabulary(console.github, settings)
    return CategoriesOut(categories=vocabulary.categories, source=vocabulary.source)
