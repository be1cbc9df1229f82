"""Tibber GraphQL query client for historical consumption backfill."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from .. import NAME, __version__
from ..config.settings import TibberConfig
from ..exceptions import TibberQueryError

logger = logging.getLogger(__name__)


CONSUMPTION_QUERY = """
query Consumption($homeId: ID!, $first: Int!, $after: String) {
  viewer {
    home(id: $homeId) {
      consumption(resolution: HOURLY, first: $first, after: $after) {
        pageInfo {
          hasNextPage
          endCursor
        }
        nodes {
          from
          to
          consumption
          cost
          currency
          unitPrice
          unitPriceVAT
          totalCost
          unitCost
          consumptionUnit
        }
      }
    }
  }
}
"""

SUBSCRIPTION_URL_QUERY = """
{
  viewer {
    websocketSubscriptionUrl
  }
}
"""


@dataclass
class ConsumptionPage:
    """One page of hourly consumption nodes."""
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: Optional[str] = None


def user_agent() -> str:
    return f"{NAME}/{__version__}"


class TibberQueryClient:
    """Tibber GraphQL API client."""

    def __init__(self, config: TibberConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
            )
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    @property
    def headers(self) -> Dict[str, str]:
        return {
            'Authorization': f"Bearer {self.config.access_token}",
            'Content-Type': 'application/json',
            'User-Agent': user_agent(),
        }

    async def query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST a GraphQL document and return its ``data`` object."""
        if not self.session:
            raise RuntimeError("Client not initialized. Use async context manager.")

        payload: Dict[str, Any] = {'query': query}
        if variables:
            payload['variables'] = variables

        async with self.session.post(self.config.query_url, json=payload, headers=self.headers) as response:
            if response.status == 429:
                logger.warning(
                    f"Tibber rate limit exceeded (Retry-After: {response.headers.get('Retry-After', '?')})"
                )
            response.raise_for_status()
            body = await response.json()

        errors = body.get('errors')
        if errors:
            messages = "; ".join(str(e.get('message', e)) for e in errors)
            raise TibberQueryError(f"Tibber query failed: {messages}", errors)

        return body.get('data') or {}

    async def get_consumption_page(
        self,
        home_id: str,
        page_size: int,
        cursor: Optional[str] = None
    ) -> ConsumptionPage:
        """Get one page of hourly consumption starting after ``cursor``."""
        variables = {'homeId': home_id, 'first': page_size, 'after': cursor}

        logger.debug(f"Fetching consumption page for {home_id}: first={page_size} after={cursor}")

        data = await self.query(CONSUMPTION_QUERY, variables)
        home = (data.get('viewer') or {}).get('home') or {}
        consumption = home.get('consumption') or {}
        page_info = consumption.get('pageInfo') or {}

        page = ConsumptionPage(
            nodes=consumption.get('nodes') or [],
            has_next_page=bool(page_info.get('hasNextPage')),
            end_cursor=page_info.get('endCursor'),
        )
        logger.debug(f"Retrieved {len(page.nodes)} consumption nodes, has_next_page={page.has_next_page}")
        return page

    async def get_websocket_subscription_url(self) -> str:
        """Look up the websocket endpoint for live subscriptions."""
        data = await self.query(SUBSCRIPTION_URL_QUERY)
        url = (data.get('viewer') or {}).get('websocketSubscriptionUrl')
        if not url:
            raise TibberQueryError("Tibber did not return a websocket subscription URL")
        return url
