"""
Access policy: who may see and who may change a video, notice or playlist.

Everything here is a pure function of a principal snapshot and an item
snapshot; callers load documents and build the snapshots first.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import FrozenSet, Literal, Optional

from database import as_utc, utcnow
from errors import Forbidden
from schemas import ALL, NOTICE_DURATIONS

ContentKind = Literal["video", "notice", "playlist"]


@dataclass(frozen=True)
class Principal:
    id: str
    role: str
    name: str = ""
    email: str = ""
    branch: Optional[str] = None
    year: Optional[str] = None
    department: Optional[str] = None
    is_approved: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_student(self) -> bool:
        return self.role == "student"

    @classmethod
    def from_document(cls, doc: dict) -> "Principal":
        return cls(
            id=str(doc["_id"]),
            role=doc.get("role", "student"),
            name=doc.get("name", ""),
            email=doc.get("email", ""),
            branch=doc.get("branch"),
            year=doc.get("year"),
            department=doc.get("department"),
            is_approved=bool(doc.get("is_approved", False)),
        )


@dataclass(frozen=True)
class ContentItem:
    id: str
    kind: ContentKind
    owner_id: str
    branch: str
    year: str
    allow_list: FrozenSet[str] = field(default_factory=frozenset)
    is_published: bool = True

    @classmethod
    def from_document(cls, kind: ContentKind, doc: dict, *, now: Optional[datetime] = None) -> "ContentItem":
        if kind == "notice":
            published = bool(doc.get("is_active", True)) and not notice_expired(doc, now=now)
        else:
            published = bool(doc.get("is_approved", True))
        return cls(
            id=str(doc["_id"]),
            kind=kind,
            owner_id=str(doc.get("teacher_id", "")),
            branch=str(doc.get("branch", "")),
            year=str(doc.get("year", "")),
            allow_list=frozenset(str(value) for value in doc.get("special_access", []) or []),
            is_published=published,
        )


def notice_expires_at(expiration: Optional[dict], created_at: Optional[datetime]) -> Optional[datetime]:
    """When a notice stops being shown; ``None`` means never."""
    expiration = expiration or {}
    if expiration.get("type") == "date":
        return as_utc(expiration.get("date"))
    if expiration.get("type") == "duration":
        days = NOTICE_DURATIONS.get(expiration.get("duration"))
        created_at = as_utc(created_at)
        if days is None or created_at is None:
            return None
        return created_at + timedelta(days=days)
    return None


def notice_expired(notice: dict, *, now: Optional[datetime] = None) -> bool:
    now = as_utc(now) or utcnow()
    expires_at = notice_expires_at(notice.get("expiration"), notice.get("created_at"))
    return expires_at is not None and now > expires_at


def cohort_matches(principal: Principal, branch: str, year: str) -> bool:
    branch_ok = branch == ALL or branch == principal.branch
    year_ok = year == ALL or year == principal.year
    return branch_ok and year_ok


def can_view(principal: Principal, item: ContentItem) -> bool:
    if principal.role in ("teacher", "admin"):
        # fetch-by-id stays open to staff; listings narrow teachers to their own items
        return True
    if principal.id in item.allow_list:
        return True
    return item.is_published and cohort_matches(principal, item.branch, item.year)


def can_mutate(principal: Principal, item: ContentItem) -> bool:
    return principal.is_admin or principal.id == item.owner_id


def require_view(principal: Principal, item: ContentItem) -> None:
    if not can_view(principal, item):
        raise Forbidden(f"You do not have access to this {item.kind}")


def require_mutate(principal: Principal, item: ContentItem) -> None:
    if not can_mutate(principal, item):
        raise Forbidden(f"Not authorized to modify this {item.kind}")


def require_role(principal: Principal, *roles: str) -> None:
    if principal.role not in roles:
        raise Forbidden(f"User role {principal.role} is not authorized to access this route")


def student_visibility_query(principal: Principal, *, published: Optional[dict] = None) -> dict:
    """Mongo filter equivalent to ``can_view`` for a student, for listings."""
    published = {"is_approved": True} if published is None else published
    cohort = {
        "branch": {"$in": [principal.branch, ALL]},
        "year": {"$in": [principal.year, ALL]},
    }
    return {
        "$or": [
            {**published, **cohort},
            {"special_access": principal.id},
        ]
    }


__all__ = [
    "ContentItem",
    "Principal",
    "can_mutate",
    "can_view",
    "cohort_matches",
    "notice_expired",
    "notice_expires_at",
    "require_mutate",
    "require_role",
    "require_view",
    "student_visibility_query",
]
