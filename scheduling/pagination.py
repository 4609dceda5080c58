"""Page slicing shared by the list endpoints."""
from __future__ import annotations

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def paginate(qs, page=None, page_size=None):
    """Return ``(items, pagination)`` for a queryset.

    ``pagination`` is the ``{'total', 'page', 'pageSize'}`` block of the
    list responses.
    """
    total = qs.count()
    page = max(1, int(page or 1))
    page_size = min(MAX_PAGE_SIZE, max(1, int(page_size or DEFAULT_PAGE_SIZE)))
    start = (page - 1) * page_size
    items = list(qs[start:start + page_size])
    return items, {'total': total, 'page': page, 'pageSize': page_size}
