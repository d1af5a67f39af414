from __future__ import annotations

from dataclasses import dataclass

from werkzeug.utils import secure_filename

from app.pdms.errors import ValidationError

CLASSIFICATIONS = ("public", "internal", "confidential", "restricted")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class Page:
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0


def parse_page(limit: int | str | None = None, offset: int | str | None = None) -> Page:
    """Coerce query-string style pagination into bounds (limit 1-100, offset >= 0)."""
    try:
        lim = DEFAULT_PAGE_SIZE if limit in (None, "") else int(limit)
        off = 0 if offset in (None, "") else int(offset)
    except (TypeError, ValueError) as e:
        raise ValidationError("limit and offset must be integers") from e
    if lim < 1 or lim > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if off < 0:
        raise ValidationError("offset must be >= 0")
    return Page(limit=lim, offset=off)


def require_text(value: str | None, field: str, *, max_len: int) -> str:
    v = (value or "").strip()
    if not v:
        raise ValidationError(f"{field} is required", details={"field": field})
    if len(v) > max_len:
        raise ValidationError(f"{field} is too long (max {max_len})", details={"field": field})
    return v


def optional_text(value: str | None, field: str, *, max_len: int) -> str | None:
    v = (value or "").strip()
    if not v:
        return None
    if len(v) > max_len:
        raise ValidationError(f"{field} is too long (max {max_len})", details={"field": field})
    return v


def validate_classification(value: str | None) -> str:
    v = (value or "").strip().lower()
    if v not in CLASSIFICATIONS:
        raise ValidationError(
            f"classification must be one of: {', '.join(CLASSIFICATIONS)}",
            details={"field": "classification"},
        )
    return v


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"
