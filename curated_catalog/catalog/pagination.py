import math

from ..database.models import PaginationState

DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_PAGES = 100


def total_pages(total_videos: int, page_size: int, max_pages: int) -> int:
    """ceil(total / page_size), capped at max_pages. Never below 1."""
    pages = math.ceil(total_videos / page_size) if page_size > 0 else 1
    return max(1, min(pages, max_pages))


def build_pagination(
    total_videos: int,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_pages: int = DEFAULT_MAX_PAGES,
    current_page: int = 1,
) -> PaginationState:
    return PaginationState(
        current_page=current_page,
        total_pages=total_pages(total_videos, page_size, max_pages),
        total_videos=total_videos,
        page_size=page_size,
    )
