"""
Social graph provider

GraphProvider is the interface the path finder depends on. NeynarProvider
implements it over the Neynar REST API.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from degrees import config
from degrees.errors import ProviderError, UserNotFound
from degrees.models import User
from degrees.utils import is_valid_identity, normalize_handle, retry_on_failure

logger = logging.getLogger(__name__)


class GraphProvider(Protocol):
    """Neighbor and user lookups against a social graph"""

    async def get_followers(self, fid: int) -> List[int]:
        """Identities following fid"""
        ...

    async def get_following(self, fid: int) -> List[int]:
        """Identities fid follows"""
        ...

    async def get_user_by_identity(self, fid: int) -> User:
        """Raises UserNotFound if the identity is unknown"""
        ...

    async def get_user_by_handle(self, handle: str) -> User:
        """Raises UserNotFound if the handle is unknown"""
        ...


def create_http_client(api_key: str) -> httpx.AsyncClient:
    """
    Create the shared HTTP client for graph provider requests.

    The client is shared across all searches for connection pooling. It's
    configured with:
    - Granular timeouts (connect, read, write, pool)
    - Connection limits
    - The provider API key and a User-Agent header

    Returns:
        httpx.AsyncClient: A new client; the caller closes it on shutdown
    """
    timeout = httpx.Timeout(
        connect=5.0,   # Time to establish connection
        read=15.0,     # Time to read response
        write=5.0,     # Time to send request
        pool=5.0       # Time to acquire connection from pool
    )

    limits = httpx.Limits(
        max_connections=100,
        max_keepalive_connections=20
    )

    return httpx.AsyncClient(
        timeout=timeout,
        limits=limits,
        headers={
            'User-Agent': 'DegreesOfSeparation/1.0',
            'x-api-key': api_key,
            'accept': 'application/json',
        },
        http2=True  # Multiplexes the concurrent follower/following lookups
    )


def extract_fid(entry: Any) -> Optional[int]:
    """
    Pull the identity out of one follower/following list entry

    The API returns {"object": "follow", "user": {"fid": ...}}; bare user
    objects are accepted too.
    """
    if not isinstance(entry, dict):
        return None

    user = entry.get('user')
    if isinstance(user, dict) and 'fid' in user:
        fid = user['fid']
    else:
        fid = entry.get('fid')

    return fid if is_valid_identity(fid) else None


class NeynarProvider:
    """GraphProvider backed by the Neynar v2 API"""

    def __init__(self, client: httpx.AsyncClient, base_url: str = config.NEYNAR_BASE_URL,
                 page_size: int = config.NEIGHBOR_PAGE_SIZE, max_pages: int = config.NEIGHBOR_MAX_PAGES):
        self.client = client
        self.base_url = base_url.rstrip('/')
        self.page_size = page_size
        self.max_pages = max_pages

    @retry_on_failure(max_retries=3, backoff_factor=0.5)
    async def _get(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.client.get(f"{self.base_url}/{endpoint}", params=params)
        response.raise_for_status()
        return response.json()

    async def _request(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET an endpoint, translating transport and HTTP failures into ProviderError"""
        try:
            return await self._get(endpoint, params)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise UserNotFound(f"{endpoint} returned 404 for {params}") from e
            raise ProviderError(f"{endpoint} returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Request error calling {endpoint}: {e}") from e
        except ValueError as e:
            raise ProviderError(f"JSON parsing error for {endpoint}: {e}") from e

    async def _fetch_relations(self, endpoint: str, fid: int) -> List[int]:
        """Follow cursor pagination for up to max_pages pages"""
        fids = []
        cursor = None

        for _ in range(self.max_pages):
            params = {'fid': fid, 'limit': self.page_size}
            if cursor:
                params['cursor'] = cursor

            data = await self._request(endpoint, params)
            for entry in data.get('users', []):
                related = extract_fid(entry)
                if related is not None:
                    fids.append(related)

            cursor = (data.get('next') or {}).get('cursor')
            if not cursor:
                break
        else:
            logger.debug(f"Stopped paging {endpoint} for {fid} after {self.max_pages} pages")

        return fids

    async def get_followers(self, fid: int) -> List[int]:
        followers = await self._fetch_relations('followers', fid)
        logger.debug(f"Found {len(followers)} followers for {fid}")
        return followers

    async def get_following(self, fid: int) -> List[int]:
        following = await self._fetch_relations('following', fid)
        logger.debug(f"Found {len(following)} following for {fid}")
        return following

    def _adapt_user(self, raw: Dict[str, Any]) -> User:
        fid = raw['fid']
        return User(
            identity=fid,
            handle=raw.get('username') or f"fid:{fid}",
            display_name=raw.get('display_name') or raw.get('username') or f"fid:{fid}",
            avatar_url=raw.get('pfp_url') or f"https://warpcast.com/~/avatar/{fid}",
        )

    async def get_user_by_identity(self, fid: int) -> User:
        data = await self._request('user/bulk', {'fids': str(fid)})
        users = data.get('users') or []
        if not users:
            raise UserNotFound(f"User not found for FID: {fid}")
        return self._adapt_user(users[0])

    async def get_user_by_handle(self, handle: str) -> User:
        username = normalize_handle(handle)
        if not username:
            raise UserNotFound(f"User not found: {handle!r}")

        data = await self._request('user/by_username', {'username': username})
        user = data.get('user')
        if not user:
            raise UserNotFound(f"User not found: {handle}")
        return self._adapt_user(user)
