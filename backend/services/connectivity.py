# services/connectivity.py
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class ReachabilityProbe:
    """Answers whether the upload endpoints can currently be reached.

    Any HTTP answer counts as reachable; only transport failures do not.
    """

    def __init__(self, client: httpx.AsyncClient, url: Optional[str], timeout: float = 5.0):
        self.client = client
        self.url = url
        self.timeout = timeout

    async def is_reachable(self) -> bool:
        if not self.url:
            return True
        try:
            await self.client.head(self.url, timeout=self.timeout)
            return True
        except httpx.TransportError as e:
            logger.debug("Reachability probe to %s failed: %s", self.url, e)
            return False
