"""Page-at-a-time walk over the commerce contact listing."""

import logging

from commerce_client import CommerceAPIError
from job_status import SyncMode
from models import ContactPage

logger = logging.getLogger(__name__)


class UpstreamPageError(Exception):
    """A page could not be fetched. Transient: the cursor must not advance past `page`."""

    def __init__(self, page: int, message: str, status_code: int = None):
        super().__init__(f"Contact page {page} failed: {message}")
        self.page = page
        self.status_code = status_code


class ContactPaginator:
    """
    Fetches contact pages in a mode-dependent order.

    Full sync walks ascending ids so a resumed run sees the same page boundaries;
    incremental walks descending ids so the newest contacts come first.
    """

    def __init__(self, client):
        self.client = client

    async def fetch_page(self, page: int, page_size: int, mode: str) -> ContactPage:
        if page < 1:
            raise ValueError(f"Pages are 1-based, got {page}")
        direction = SyncMode.order_direction(mode)
        try:
            listing = await self.client.list_contacts(page=page, limit=page_size, order_direction=direction)
        except CommerceAPIError as e:
            logger.warning(f"Contact page {page} ({direction}) failed: {e}")
            raise UpstreamPageError(page, str(e), status_code=e.status_code) from e
        return ContactPage(items=listing.get("items") or [], total=listing.get("total") or 0)
