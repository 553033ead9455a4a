"""
Point-in-time pagination helpers

Page tokens are "<pitId>:<from>". They are opaque to callers.
"""

from dataclasses import dataclass
from typing import Tuple

from search.errors import InvalidArgumentError

DEFAULT_PIT_KEEP_ALIVE = "5m"
MAX_PAGE_SIZE = 1000
PAGE_TOKEN_SEPARATOR = ":"


@dataclass
class Pagination:
    """Paging request for a single list call"""
    size: int
    token: str = ""
    keep_alive: str = DEFAULT_PIT_KEEP_ALIVE


def parse_page_token(page_token: str) -> Tuple[str, int]:
    """
    Split a page token into its PIT id and offset

    Args:
        page_token: token previously returned by create_page_token

    Returns:
        (pit_id, from)

    Raises:
        InvalidArgumentError: not exactly two parts or offset not a non-negative integer
    """
    parts = page_token.split(PAGE_TOKEN_SEPARATOR)
    if len(parts) != 2 or not parts[0]:
        raise InvalidArgumentError(
            f"error parsing page token, expected two parts split by {PAGE_TOKEN_SEPARATOR}",
            details={"page_token": page_token},
        )

    pit_id, offset = parts

    if not (offset.isascii() and offset.isdigit()):
        raise InvalidArgumentError(
            f"error parsing page token, offset is not a non-negative integer: {offset}",
            details={"page_token": page_token},
        )

    return pit_id, int(offset)


def create_page_token(pit_id: str, search_from: int) -> str:
    return f"{pit_id}{PAGE_TOKEN_SEPARATOR}{search_from}"
