"""
Pagination and reference-depth resolution shared by all compilers.

``offset`` + ``limit`` describe the exclusive range ``[offset, offset + limit)``.
``limit`` alone starts at 0. ``offset`` alone runs to the end of the result
set with no upper bound; this is intentional, callers wanting a bounded page
must pass a limit (or configure a compiler ``default_limit``).
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class Page:
    """A resolved result window."""
    offset: int = 0
    limit: Optional[int] = None

    @property
    def end(self) -> Optional[int]:
        """Exclusive upper bound, or None when unbounded."""
        if self.limit is None:
            return None
        return self.offset + self.limit

    @property
    def is_empty(self) -> bool:
        return self.offset == 0 and self.limit is None


def resolve_page(limit: Optional[int], offset: Optional[int],
                 default_limit: Optional[int] = None) -> Page:
    """
    Resolve limit/offset into a Page.

    Args:
        limit: Maximum number of results, if any
        offset: Number of results to skip, if any
        default_limit: Used only when neither limit nor offset is given

    Returns:
        The resolved Page
    """
    if limit is None and offset is None:
        return Page(0, default_limit)
    if offset is None:
        return Page(0, limit)
    return Page(offset, limit)


def resolve_depth(value: Union[bool, int, None], max_depth: int) -> Tuple[int, bool]:
    """
    Resolve a ``resolve_references`` setting to a concrete depth.

    ``True`` means one level, integers are clamped to ``max_depth``.

    Returns:
        Tuple of (depth, clamped)
    """
    if value is None or value is False:
        return 0, False
    depth = 1 if value is True else int(value)
    if depth > max_depth:
        return max_depth, True
    return depth, False
