from dataclasses import dataclass
from enum import Enum

ANONYMOUS_SUBJECT = "anonymous"


class PrincipalType(str, Enum):
    ADMIN = "admin"
    SUBMITTER = "submitter"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str

    @property
    def is_anonymous(self) -> bool:
        return self.subject == ANONYMOUS_SUBJECT


def parse_forwarded_for(header: str | None) -> str | None:
    if not header:
        return None
    first_hop = header.split(",", maxsplit=1)[0].strip()
    return first_hop or None
