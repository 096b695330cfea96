from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from portal.domain.messaging.exceptions import ValidationError
from portal.settings import settings


@dataclass(slots=True, frozen=True)
class PageRequest:
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def page_request(page: Optional[int] = None, limit: Optional[int] = None) -> PageRequest:
    """Normalise page/limit query values; page is 1-based."""
    try:
        page_value = int(page) if page is not None else 1
        limit_value = int(limit) if limit is not None else settings.messages_default_page_size
    except (TypeError, ValueError):
        raise ValidationError("invalid_pagination") from None
    if page_value < 1 or limit_value < 1:
        raise ValidationError("invalid_pagination")
    return PageRequest(page=page_value, limit=min(limit_value, settings.messages_max_page_size))


def page_metadata(request: PageRequest, total: int) -> dict[str, int | bool]:
    total_pages = (total + request.limit - 1) // request.limit if total else 0
    return {
        "total": total,
        "page": request.page,
        "limit": request.limit,
        "total_pages": total_pages,
        "has_next_page": request.page < total_pages,
        "has_prev_page": request.page > 1,
    }
