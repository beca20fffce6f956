"""
Pagination and filtering helpers for listing list members.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

FALLBACK_PAGE_SIZE = 10

SORT_ORDER_ASC = "asc"
SORT_ORDER_DESC = "desc"


@dataclass
class PaginationInfo:
    total_count: int
    current_page: int
    total_pages: int
    page_size: int

    @property
    def offset(self) -> int:
        return (self.current_page - 1) * self.page_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalCount": self.total_count,
            "currentPage": self.current_page,
            "totalPages": self.total_pages,
            "pageSize": self.page_size,
        }


@dataclass
class ParticipantFilter:
    included_since: Optional[datetime] = None
    included_until: Optional[datetime] = None
    participant_id: str = ""
    recruitment_status: str = ""


@dataclass
class ParticipantSort:
    field: str = "includedAt"
    order: str = SORT_ORDER_ASC

    @property
    def descending(self) -> bool:
        return self.order == SORT_ORDER_DESC


def total_pages(total_count: int, limit: int) -> int:
    if limit == 0:
        return 0
    return (total_count + limit - 1) // limit


def prep_pagination_infos(total_count: int, page: int, limit: int) -> PaginationInfo:
    """
    Normalize paging input.

    A zero limit falls back to FALLBACK_PAGE_SIZE. The page is forced to 1 when
    everything fits on one page or when a page below 1 is requested.
    """
    if limit == 0:
        limit = FALLBACK_PAGE_SIZE

    if total_count < limit:
        page = 1

    if page < 1:
        page = 1

    return PaginationInfo(
        total_count=total_count,
        current_page=page,
        total_pages=total_pages(total_count, limit),
        page_size=limit,
    )
