"""
Pagination walkers for the two list protocols ARM uses.

- Continuation-token walker: the token comes back in a response header
  (matched case-insensitively) and is sent back as a query parameter.
- Next-link walker: the response body carries an absolute ``nextLink`` URL.

Both accumulate one ordered item list. A failed first page yields ``None``;
a failed later page aborts that resource's pagination and keeps what was
already collected.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from .arm import ArmClient
from .constants import CONTINUATION_HEADER, CONTINUATION_PARAM, NEXT_LINK_FIELD

logger = logging.getLogger(__name__)

SufficiencyPredicate = Callable[[List[Dict[str, Any]]], bool]


def walk_continuation(
    client: ArmClient,
    target: str,
    params: Optional[Dict[str, Any]] = None,
    header: str = CONTINUATION_HEADER,
    token_param: str = CONTINUATION_PARAM,
    enough: Optional[SufficiencyPredicate] = None,
) -> Optional[List[Dict[str, Any]]]:
    """
    Follow continuation tokens read from a response header.

    Stops when the header is absent or ``enough(items)`` returns True.

    Example:
        points = walk_continuation(client, f"{item_id}/recoveryPoints",
                                   params={'api-version': '2024-04-01'},
                                   enough=lambda items: len(items) >= 2)
    """
    items: List[Dict[str, Any]] = []
    page_params = dict(params or {})
    pages = 0

    while True:
        response = client.get(target, params=page_params)
        if response is None:
            if pages == 0:
                return None
            logger.warning(f"Pagination of {target} aborted after {pages} page(s)")
            return items

        pages += 1
        items.extend(response.items)

        if enough is not None and enough(items):
            logger.debug(f"Stopped paging {target} early after {pages} page(s)")
            return items

        token = response.header(header)
        if not token:
            return items
        page_params = dict(params or {})
        page_params[token_param] = token


def walk_next_links(
    client: ArmClient,
    target: str,
    params: Optional[Dict[str, Any]] = None,
) -> Optional[List[Dict[str, Any]]]:
    """
    Follow ``nextLink`` body fields until one is absent.

    The first request carries ``params``; next links already embed their
    query string and are requested as-is.
    """
    items: List[Dict[str, Any]] = []
    next_target: Optional[str] = target
    page_params: Optional[Dict[str, Any]] = params
    pages = 0

    while next_target:
        response = client.get(next_target, params=page_params)
        if response is None:
            if pages == 0:
                return None
            logger.warning(f"Pagination of {target} aborted after {pages} page(s)")
            return items

        pages += 1
        items.extend(response.items)

        body = response.body if isinstance(response.body, dict) else {}
        next_target = body.get(NEXT_LINK_FIELD)
        page_params = None

    return items
