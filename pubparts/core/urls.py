import re
from urllib.parse import urljoin, urlparse

PRINTABLES_MODEL_RE = re.compile(r"printables\.com/.*?model/(\d+)", re.IGNORECASE)
THINGIVERSE_THING_RE = re.compile(r"thingiverse\.com/thing:(\d+)", re.IGNORECASE)
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")

MARKETPLACE_PATTERNS: dict[str, re.Pattern[str]] = {
    "printables": PRINTABLES_MODEL_RE,
    "thingiverse": THINGIVERSE_THING_RE,
}


def is_http_url(raw_url: str | None) -> bool:
    if not raw_url:
        return False
    parsed = urlparse(raw_url.strip())
    return parsed.scheme.lower() in {"http", "https"} and bool(parsed.netloc)


def printables_model_id(raw_url: str) -> str | None:
    match = PRINTABLES_MODEL_RE.search(raw_url)
    return match.group(1) if match else None


def duplicate_key(raw_url: str) -> str:
    """Identity key used to group listings that point at the same source item.

    Marketplace item pages collapse to ``<marketplace>-<id>`` so cosmetic
    variants (slug, locale prefix, query string) share a key. Anything else
    loses its scheme, a leading ``www.`` and trailing slashes.
    """
    lowered = raw_url.strip().lower()
    for marketplace, pattern in MARKETPLACE_PATTERNS.items():
        match = pattern.search(lowered)
        if match:
            return f"{marketplace}-{match.group(1)}"

    stripped = _SCHEME_RE.sub("", lowered)
    if stripped.startswith("www."):
        stripped = stripped[len("www.") :]
    return stripped.rstrip("/")


def resolve_against(candidate: str | None, page_url: str) -> str | None:
    """Make an image/link reference absolute relative to the page it came from."""
    if not candidate:
        return None
    value = candidate.strip()
    if not value:
        return None
    if value.startswith("//"):
        scheme = urlparse(page_url).scheme or "https"
        return f"{scheme}:{value}"
    if is_http_url(value):
        return value
    resolved = urljoin(page_url, value)
    return resolved if is_http_url(resolved) else None
