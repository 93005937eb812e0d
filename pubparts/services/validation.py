from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import date

from pubparts.core.urls import is_http_url
from pubparts.schemas.parts import OEM_TAG, PartRecord, PartRecordIn
from pubparts.schemas.submissions import SubmissionRequest
from pubparts.services.vocabulary import CatalogVocabulary

REQUIRED_FIELDS = ("title", "externalUrl", "platform", "typeOfPart")


class SubmissionError(Exception):
    """Base submission error."""


class SuspectedBotError(SubmissionError):
    """Raised when the honeypot field is filled in."""


class SubmissionValidationError(SubmissionError):
    def __init__(
        self,
        message: str,
        *,
        record_number: int | None = None,
        missing_fields: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message)
        self.record_number = record_number
        self.missing_fields = missing_fields


def check_honeypot(request: SubmissionRequest) -> None:
    if request.hp_field:
        raise SuspectedBotError("honeypot field was filled in")


def normalize_submission(request: SubmissionRequest) -> list[PartRecordIn]:
    if request.parts is not None:
        return list(request.parts)

    if request.edited_part is None and request.printables_url is None:
        return []

    part = request.edited_part or PartRecordIn()
    # The listing URL the form resolved is authoritative over whatever the edited part carries.
    if request.printables_url and request.printables_url.strip():
        part = part.model_copy(update={"external_url": request.printables_url.strip()})
    return [part]


def validate_submission(
    request: SubmissionRequest,
    *,
    vocabulary: CatalogVocabulary,
    max_batch_size: int = 10,
    default_fabrication_method: str = "3d Printed",
    today: date | None = None,
) -> list[PartRecord]:
    check_honeypot(request)

    parts = normalize_submission(request)
    if not parts:
        raise SubmissionValidationError("Submission must include at least one part")

    for number, part in enumerate(parts, start=1):
        _check_record(number, part, vocabulary)

    if len(parts) > max_batch_size:
        raise SubmissionValidationError(
            f"Too many parts in one submission: {len(parts)} (maximum is {max_batch_size})"
        )

    submitted_on = (today or date.today()).isoformat()
    return [
        _finalize(part, vocabulary, default_fabrication_method=default_fabrication_method, submitted_on=submitted_on)
        for part in parts
    ]


def missing_fields(part: PartRecordIn) -> tuple[str, ...]:
    present = {
        "title": bool((part.title or "").strip()),
        "externalUrl": bool((part.external_url or "").strip()),
        "platform": bool(_clean_tags(part.platform)),
        "typeOfPart": bool(_clean_tags(part.type_of_part)),
    }
    return tuple(name for name in REQUIRED_FIELDS if not present[name])


def _check_record(number: int, part: PartRecordIn, vocabulary: CatalogVocabulary) -> None:
    missing = missing_fields(part)
    if missing:
        raise SubmissionValidationError(
            f"Part {number}: missing required field(s): {', '.join(missing)}",
            record_number=number,
            missing_fields=missing,
        )

    if not is_http_url(part.external_url):
        raise SubmissionValidationError(
            f"Part {number}: externalUrl must be an http(s) URL",
            record_number=number,
        )

    platforms = _clean_tags(part.platform)
    if not any(vocabulary.canonical_platform(tag) for tag in platforms):
        raise SubmissionValidationError(
            f"Part {number}: no recognized platform in {platforms}",
            record_number=number,
        )

    categories = _clean_tags(part.type_of_part)
    if not any(vocabulary.canonical_category(tag) for tag in categories):
        raise SubmissionValidationError(
            f"Part {number}: no recognized part type in {categories}",
            record_number=number,
        )


def _finalize(
    part: PartRecordIn,
    vocabulary: CatalogVocabulary,
    *,
    default_fabrication_method: str,
    submitted_on: str,
) -> PartRecord:
    type_of_part = _canonical_tags(part.type_of_part, vocabulary.canonical_category)
    if part.is_oem and OEM_TAG not in type_of_part:
        type_of_part.append(OEM_TAG)

    return PartRecord(
        title=(part.title or "").strip(),
        image_src=(part.image_src or "").strip(),
        platform=_canonical_tags(part.platform, vocabulary.canonical_platform),
        fabrication_method=_clean_tags(part.fabrication_method) or [default_fabrication_method],
        type_of_part=type_of_part,
        dropbox_url=(part.dropbox_url or "").strip(),
        dropbox_zip_last_updated=(part.dropbox_zip_last_updated or "").strip() or submitted_on,
        external_url=(part.external_url or "").strip(),
        is_oem=True if part.is_oem else None,
    )


def _clean_tags(values: Iterable[str]) -> list[str]:
    cleaned: list[str] = []
    for value in values:
        stripped = value.strip()
        if stripped and stripped not in cleaned:
            cleaned.append(stripped)
    return cleaned


def _canonical_tags(values: Iterable[str], canonical: Callable[[str], str | None]) -> list[str]:
    result: list[str] = []
    for value in _clean_tags(values):
        tag = canonical(value) or value
        if tag not in result:
            result.append(tag)
    return result
