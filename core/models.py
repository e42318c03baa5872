from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 50
MAX_LIMIT = 200


@dataclass
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT
    total: int = 0

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


def page_bounds(page: int, limit: int) -> tuple[int, int, int]:
    """Clamp page/limit to sane values and return (page, limit, offset)."""
    page = max(1, int(page or DEFAULT_PAGE))
    limit = max(1, min(int(limit or DEFAULT_LIMIT), MAX_LIMIT))
    return page, limit, (page - 1) * limit
