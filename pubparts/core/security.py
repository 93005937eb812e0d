import hmac

from fastapi import Depends, HTTPException, Request, status

from pubparts.core.auth import ANONYMOUS_SUBJECT, Principal, PrincipalType, parse_forwarded_for
from pubparts.core.config import Settings, get_settings


async def get_admin_principal(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> Principal:
    if not settings.admin_password:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin console is not configured",
        )

    supplied = request.headers.get(settings.admin_header)
    if not supplied:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")

    if not hmac.compare_digest(supplied.encode("utf-8"), settings.admin_password.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")

    return Principal(principal_type=PrincipalType.ADMIN, subject="admin")


async def get_submitter_principal(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> Principal:
    forwarded = None
    # Forwarding headers are client-controlled unless a proxy in front rewrites them.
    if settings.trusted_proxy_headers:
        forwarded = (
            _header(request, "cf-connecting-ip")
            or parse_forwarded_for(request.headers.get("x-forwarded-for"))
            or _header(request, "x-real-ip")
        )
    subject = (
        forwarded
        or (request.client.host if request.client and request.client.host else None)
        or ANONYMOUS_SUBJECT
    )
    return Principal(principal_type=PrincipalType.SUBMITTER, subject=subject)


def _header(request: Request, name: str) -> str | None:
    value = request.headers.get(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
