"""1-indexed pagination metadata for listing endpoints."""

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class Page:
    current_page: int
    per_page: int
    total_count: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.per_page) if self.per_page > 0 else 0

    @property
    def offset(self) -> int:
        return (self.current_page - 1) * self.per_page

    def to_dict(self) -> dict:
        return {
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "total_count": self.total_count,
            "per_page": self.per_page,
        }


def parse_page(raw) -> int:
    """Page number from a query-string value; anything invalid or below 1 becomes 1."""
    try:
        return max(int(raw), 1)
    except (TypeError, ValueError):
        return 1


def paginate(total_count: int, page=1, per_page: int = 25) -> Page:
    return Page(current_page=parse_page(page), per_page=per_page, total_count=total_count)
