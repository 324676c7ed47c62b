"""
Read-only listing helpers for import history and member activation status.

Both listings share one contract: a closed sort allow-list with a fixed
fallback, 1-indexed offset pagination and ``pages = ceil(total / limit)``.
A page past the end is an empty list, not an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Mapping, TypeVar

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from coop_app.importer.errors import RecordNotFoundError
from coop_app.models import db
from coop_app.models.importer.schema import (
    ActivationStatus,
    ImportJob,
    ImportJobIssue,
    MemberActivationRecord,
)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 25
MAX_LIMIT = 100

JOB_SORT_FIELDS = {
    "created_at": ImportJob.created_at,
    "source_file_name": ImportJob.source_file_name,
    "total_rows": ImportJob.total_rows,
    "successful_imports": ImportJob.successful_imports,
    "failed_imports": ImportJob.failed_imports,
    "skipped_rows": ImportJob.skipped_rows,
    "status": ImportJob.status,
}
JOB_DEFAULT_SORT = ("created_at", "desc")

RECORD_SORT_FIELDS = {
    "member_id": MemberActivationRecord.member_id,
    "name": MemberActivationRecord.name,
    "activation_status": MemberActivationRecord.activation_status,
    "created_at": MemberActivationRecord.created_at,
    "sms_sent_at": MemberActivationRecord.sms_sent_at,
    "email_sent_at": MemberActivationRecord.email_sent_at,
    "activated_at": MemberActivationRecord.activated_at,
}
RECORD_DEFAULT_SORT = ("member_id", "asc")

T = TypeVar("T")


@dataclass(frozen=True)
class PageRequest:
    """Pagination and ordering options, already clamped to valid values."""

    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT
    sort_by: str | None = None
    sort_order: str | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        limit: int | str | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
    ) -> "PageRequest":
        """
        Coerce raw request values; anything unparsable falls back to defaults.
        """
        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_limit = min(_coerce_positive_int(limit, fallback=default_limit), max_limit)
        resolved_sort_by = sort_by.strip() if isinstance(sort_by, str) and sort_by.strip() else None
        resolved_order = sort_order.strip().lower() if isinstance(sort_order, str) and sort_order.strip() else None
        return cls(page=resolved_page, limit=resolved_limit, sort_by=resolved_sort_by, sort_order=resolved_order)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class MemberFilters:
    status: ActivationStatus | None = None
    search: str | None = None
    import_job_id: int | None = None

    @classmethod
    def coerce(
        cls,
        *,
        status: str | ActivationStatus | None = None,
        search: str | None = None,
        import_job_id: int | str | None = None,
    ) -> "MemberFilters":
        """Raises ``ValueError`` for an unknown status or a non-numeric job id."""
        resolved_status = None
        if status not in (None, "", "all"):
            try:
                resolved_status = ActivationStatus.coerce(status)
            except ValueError:
                raise ValueError(f"Unsupported status filter '{status}'.") from None

        resolved_search = search.strip() if isinstance(search, str) and search.strip() else None

        resolved_job_id = None
        if import_job_id not in (None, ""):
            if isinstance(import_job_id, int):
                resolved_job_id = import_job_id
            elif isinstance(import_job_id, str) and import_job_id.strip().isdigit():
                resolved_job_id = int(import_job_id.strip())
            else:
                raise ValueError(f"Invalid import_job_id '{import_job_id}'.")

        return cls(status=resolved_status, search=resolved_search, import_job_id=resolved_job_id)


@dataclass(frozen=True)
class Pagination:
    page: int
    limit: int
    total: int
    pages: int

    def as_dict(self) -> dict[str, int]:
        return {"page": self.page, "limit": self.limit, "total": self.total, "pages": self.pages}


@dataclass(frozen=True)
class ListResult(Generic[T]):
    items: list[T]
    pagination: Pagination


class ImportQueryService:
    """Facade for import job and member record queries."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    # ---------------------------------------------------------------------
    # Import jobs
    # ---------------------------------------------------------------------

    def list_import_jobs(self, request: PageRequest) -> ListResult[ImportJob]:
        query = select(ImportJob)
        order_by = _resolve_sort_expression(request, JOB_SORT_FIELDS, JOB_DEFAULT_SORT)
        return self._paginate(query, request, order_by, ImportJob.id)

    def get_import_job(self, job_id: int) -> ImportJob:
        job = self.session.get(ImportJob, job_id)
        if job is None:
            raise RecordNotFoundError("Import job", job_id)
        return job

    def list_job_issues(self, job_id: int) -> list[ImportJobIssue]:
        self.get_import_job(job_id)
        return list(
            self.session.execute(
                select(ImportJobIssue)
                .where(ImportJobIssue.import_job_id == job_id)
                .order_by(ImportJobIssue.row_number.asc(), ImportJobIssue.id.asc())
            ).scalars()
        )

    # ---------------------------------------------------------------------
    # Member records
    # ---------------------------------------------------------------------

    def list_member_records(
        self, filters: MemberFilters, request: PageRequest
    ) -> ListResult[MemberActivationRecord]:
        query = select(MemberActivationRecord)
        predicates = _member_predicates(filters)
        if predicates:
            query = query.where(*predicates)
        order_by = _resolve_sort_expression(request, RECORD_SORT_FIELDS, RECORD_DEFAULT_SORT)
        return self._paginate(query, request, order_by, MemberActivationRecord.id)

    def get_member_record(self, record_id: int) -> MemberActivationRecord:
        record = self.session.get(MemberActivationRecord, record_id)
        if record is None:
            raise RecordNotFoundError("Member", record_id)
        return record

    def get_status_counts(self, import_job_id: int | None = None) -> Mapping[str, int]:
        """Records per activation status; every status is present, zero when unused."""
        query = select(MemberActivationRecord.activation_status, func.count()).group_by(
            MemberActivationRecord.activation_status
        )
        if import_job_id is not None:
            query = query.where(MemberActivationRecord.import_job_id == import_job_id)
        counts = {status.value: 0 for status in ActivationStatus}
        for status, count in self.session.execute(query).all():
            counts[status.value if isinstance(status, ActivationStatus) else str(status)] = count
        counts["total"] = sum(counts.values())
        return counts

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _paginate(self, query, request: PageRequest, order_by, tiebreaker) -> ListResult[Any]:
        total = self.session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
        pages = (total + request.limit - 1) // request.limit
        if total == 0 or request.page > pages:
            items: list[Any] = []
        else:
            items = list(
                self.session.execute(
                    query.order_by(order_by, tiebreaker.asc()).offset(request.offset).limit(request.limit)
                ).scalars()
            )
        return ListResult(
            items=items,
            pagination=Pagination(page=request.page, limit=request.limit, total=total, pages=pages),
        )


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, bool):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.strip().lstrip("-").isdigit():
        return max(1, int(candidate.strip()))
    return fallback


def _resolve_sort_expression(request: PageRequest, fields: Mapping[str, Any], default: tuple[str, str]):
    """Unknown fields or orders fall back to the listing's default ordering."""
    default_field, default_order = default
    if request.sort_by in fields:
        column = fields[request.sort_by]
        order = request.sort_order if request.sort_order in ("asc", "desc") else default_order
    else:
        column = fields[default_field]
        order = default_order
    return column.desc() if order == "desc" else column.asc()


def _member_predicates(filters: MemberFilters) -> list[Any]:
    predicates: list[Any] = []
    if filters.status is not None:
        predicates.append(MemberActivationRecord.activation_status == filters.status)
    if filters.import_job_id is not None:
        predicates.append(MemberActivationRecord.import_job_id == filters.import_job_id)
    if filters.search:
        predicates.append(_build_search_predicate(filters.search))
    return predicates


def _build_search_predicate(term: str):
    """Case-insensitive substring match on member_id or name."""
    escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    return or_(
        func.lower(MemberActivationRecord.member_id).like(pattern, escape="\\"),
        func.lower(MemberActivationRecord.name).like(pattern, escape="\\"),
    )
