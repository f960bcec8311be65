"""
Connection orchestration

Turns a pair of identities into a path finder run and a user-facing result.
Internal errors never leak past this layer: every outcome becomes one of the
ConnectionResult statuses with a friendly message.
"""
import asyncio
import logging
from typing import List, Optional

from degrees.database import ConnectionStore
from degrees.errors import (
    CacheWriteFailure, InvalidInput, PathNotFound, ProviderError,
    ProviderUnavailable, SearchTimeout, StorageError,
)
from degrees.models import ConnectionResult, User
from degrees.pathfinder import PathFinder
from degrees.provider import GraphProvider
from degrees.utils import normalize_handle

logger = logging.getLogger(__name__)

MESSAGE_SELF = "That's you!"
MESSAGE_TIMEOUT = "Search timed out, try again."
MESSAGE_UNVERIFIED = "Could not verify identity."


class ConnectionService:
    def __init__(self, finder: PathFinder, provider: GraphProvider, store: ConnectionStore):
        self.finder = finder
        self.provider = provider
        self.store = store

    async def resolve(self, source: int, target: int, searcher: Optional[int] = None) -> ConnectionResult:
        """
        Find the connection between two identities

        Args:
            source: Identity the search starts from
            target: Identity to reach
            searcher: Who asked (defaults to source)

        Returns:
            ConnectionResult whose status is found, self, not_found, timeout or unverified
        """
        try:
            path = await self.finder.find_path(source, target)

        except (InvalidInput, ProviderUnavailable) as e:
            logger.warning(f"Could not verify identities {source!r} -> {target!r}: {e}")
            return ConnectionResult(status="unverified", source=None, target=None, message=MESSAGE_UNVERIFIED)

        except PathNotFound as e:
            logger.info(
                str(e),
                extra={"nodes_explored": e.nodes_explored, "max_depth_reached": e.max_depth_reached}
            )
            return ConnectionResult(
                status="not_found",
                source=source,
                target=target,
                message=f"No connection found within {self.finder.max_depth} degrees."
            )

        except SearchTimeout:
            return ConnectionResult(status="timeout", source=source, target=target, message=MESSAGE_TIMEOUT)

        degree = len(path) - 1
        if degree == 0:
            return ConnectionResult(
                status="self", source=source, target=target, path=path, degree=0, message=MESSAGE_SELF
            )

        search_id = await self._record(searcher if searcher is not None else source, source, target, path)

        return ConnectionResult(
            status="found",
            source=source,
            target=target,
            path=path,
            degree=degree,
            message=f"Connected in {degree} degree{'s' if degree != 1 else ''}.",
            search_id=search_id
        )

    async def _record(self, searcher: int, source: int, target: int, path: List[int]) -> Optional[int]:
        try:
            return await self.store.record_search(searcher, source, target, path)
        except StorageError as e:
            failure = CacheWriteFailure(f"Could not record search {source} -> {target}: {e}")
            logger.error(str(failure))
            return None

    async def resolve_identifier(self, identifier: str) -> int:
        """
        Turn user input into an identity

        Numeric strings are taken as identities directly; anything else is
        looked up as a handle.

        Raises:
            InvalidInput: If the identifier is blank or a non-positive number
            UserNotFound: If the handle is unknown
            ProviderError: If the lookup failed
        """
        value = (identifier or "").strip()
        if not value:
            raise InvalidInput("Identifier cannot be empty")

        if value.isdigit():
            fid = int(value)
            if fid <= 0:
                raise InvalidInput(f"Invalid identity: {value}")
            return fid

        user = await self.provider.get_user_by_handle(normalize_handle(value))
        return user.identity

    async def describe_path(self, path: List[int]) -> List[User]:
        """
        Look up user details for every identity in a path

        Identities whose lookup fails are returned as placeholders so the
        path can still be rendered.
        """
        results = await asyncio.gather(
            *(self.provider.get_user_by_identity(fid) for fid in path),
            return_exceptions=True
        )

        users = []
        for fid, result in zip(path, results):
            if isinstance(result, ProviderError):
                logger.warning(f"Error retrieving user info for {fid}: {result}")
                users.append(User(identity=fid, handle=f"fid:{fid}", display_name=f"fid:{fid}"))
            elif isinstance(result, BaseException):
                raise result
            else:
                users.append(result)
        return users
