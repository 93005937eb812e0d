from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse

from pubparts.core.urls import is_http_url
from pubparts.schemas.scrape import ResolveAttemptOut, ScrapeOut
from pubparts.services.resolver import MetadataResolver, get_metadata_resolver

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Max-Age": "86400",
}

router = APIRouter()


@router.options("")
async def scrape_preflight() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=CORS_HEADERS)


@router.get("")
async def scrape_metadata(
    url: str | None = Query(default=None),
    resolver: MetadataResolver = Depends(get_metadata_resolver),
) -> JSONResponse:
    headers = {"Access-Control-Allow-Origin": "*"}
    if not url or not is_http_url(url):
        body = ScrapeOut(success=False, error="Missing or invalid url parameter")
        return JSONResponse(body.model_dump(), status_code=status.HTTP_400_BAD_REQUEST, headers=headers)

    result = await resolver.resolve(url)
    body = ScrapeOut(
        success=result.success,
        title=result.title,
        description=result.description,
        image=result.image,
        tags=result.tags,
        source=result.source,
        error=result.error,
        attempts=[
            ResolveAttemptOut(
                strategy=attempt.strategy,
                target=attempt.target,
                status_code=attempt.status_code,
                snippet=attempt.snippet,
                error=attempt.error,
            )
            for attempt in result.attempts
        ],
    )
    status_code = status.HTTP_200_OK if result.success else 422
    return JSONResponse(body.model_dump(), status_code=status_code, headers=headers)
