"""
Shortest path search over the social graph

The search prefers what is already known before touching the network:
1. Self match: no I/O at all
2. Stored edge between source and target
3. Replay of the most recent logged search for the same pair
4. Bounded breadth-first search through the graph provider

Edges seen during the search are written to the connection store as a side
effect, so repeated searches get progressively cheaper.

Adjacency is treated as symmetric: an identity's neighbors are its followers
and the identities it follows, and a stored edge counts in either direction.
"""
import asyncio
import logging
from collections import deque
from typing import List, Optional

from degrees import config
from degrees.database import ConnectionStore
from degrees.errors import (
    CacheWriteFailure, NodeExplorationFailure, PathNotFound, ProviderError,
    ProviderUnavailable, SearchTimeout, StorageError,
)
from degrees.provider import GraphProvider
from degrees.utils import is_valid_identity, require_identity

logger = logging.getLogger(__name__)


class PathFinder:
    def __init__(self, store: ConnectionStore, provider: GraphProvider,
                 max_depth: int = config.MAX_DEPTH,
                 max_queue_size: int = config.MAX_QUEUE_SIZE,
                 batch_size: int = config.CONNECTION_BATCH_SIZE,
                 timeout_seconds: float = config.SEARCH_TIMEOUT_SECONDS):
        """
        Args:
            store: Opened connection store
            provider: Graph provider used for live exploration
            max_depth: Nodes at this depth are not expanded (default: 6)
            max_queue_size: Maximum nodes dequeued per search (default: 10000)
            batch_size: Neighbors handled per unit of work (default: 100)
            timeout_seconds: Wall-clock budget for one search (default: 60)
        """
        self.store = store
        self.provider = provider
        self.max_depth = max_depth
        self.max_queue_size = max_queue_size
        self.batch_size = batch_size
        self.timeout_seconds = timeout_seconds

    async def find_path(self, source: int, target: int) -> List[int]:
        """
        Find the shortest known path between two identities

        Args:
            source: Starting identity
            target: Identity to reach

        Returns:
            Ordered identities from source to target; [source] if they match

        Raises:
            InvalidInput: If either identity is not a positive integer
            ProviderUnavailable: If the source's neighbors cannot be fetched at all
            PathNotFound: If no path exists within the search bounds
            SearchTimeout: If the search exceeds timeout_seconds
        """
        require_identity(source, "source")
        require_identity(target, "target")

        if source == target:
            logger.info(f"Self-connection detected for {source}")
            return [source]

        logger.info(f"Starting path search from {source} to {target}")

        try:
            async with asyncio.timeout(self.timeout_seconds):
                path = await self._find_direct_edge(source, target)
                if path:
                    return path

                path = await self._find_cached_path(source, target)
                if path:
                    return path

                return await self._run_bfs(source, target)

        except TimeoutError:
            logger.warning(
                f"Search from {source} to {target} timed out",
                extra={"source": source, "target": target, "timeout": self.timeout_seconds}
            )
            raise SearchTimeout(self.timeout_seconds)

    async def _find_direct_edge(self, source: int, target: int) -> Optional[List[int]]:
        """Stored edge between source and target, in either direction"""
        edges = await self.store.edges_from(source)

        if any(edge.other(source) == target for edge in edges):
            logger.info(f"Direct connection found in store: {source} -> {target}")
            return [source, target]

        logger.debug(f"{len(edges)} stored edges for {source}, none to {target}")
        return None

    async def _find_cached_path(self, source: int, target: int) -> Optional[List[int]]:
        """Most recent logged path for exactly this pair, if it is still usable"""
        searches = await self.store.recent_searches(from_fid=source, to_fid=target, limit=1)
        if not searches:
            return None

        path = searches[0].path
        if len(path) < 2 or not all(is_valid_identity(fid) for fid in path):
            logger.debug(f"Ignoring unusable cached path for {source} -> {target}: {path}")
            return None

        logger.info(f"Using cached path: {' -> '.join(map(str, path))}")
        return path

    async def _fetch_neighbors(self, fid: int, depth: int) -> List[int]:
        """
        Followers and following of fid, deduplicated in first-seen order

        Raises:
            NodeExplorationFailure: If both lookups failed
        """
        results = await asyncio.gather(
            self.provider.get_followers(fid),
            self.provider.get_following(fid),
            return_exceptions=True
        )

        neighbors = []
        failures = []
        for result in results:
            if isinstance(result, Exception):
                # A failed lookup only costs this node
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
            elif not isinstance(result, (list, tuple)):
                failures.append(ProviderError(f"Unexpected neighbor payload for {fid}: {result!r}"))
            else:
                neighbors.extend(result)

        if len(failures) == len(results):
            raise NodeExplorationFailure(fid, depth, failures[0])

        if failures:
            logger.warning(
                f"Partial neighbor lookup for {fid}: {failures[0]}",
                extra={"node": fid, "depth": depth}
            )

        # Drop provider noise: duplicates, non-numeric and non-positive ids
        return list(dict.fromkeys(n for n in neighbors if is_valid_identity(n)))

    async def _store_edges(self, pairs):
        try:
            await self.store.upsert_edges(pairs)
        except StorageError as e:
            failure = CacheWriteFailure(f"Could not cache {len(pairs)} edges: {e}")
            logger.error(str(failure))

    async def _store_path(self, path: List[int]):
        """Persist every hop of a confirmed path in both directions"""
        pairs = []
        for i in range(len(path) - 1):
            pairs.append((path[i], path[i + 1]))
            pairs.append((path[i + 1], path[i]))

        logger.info(f"Storing path connections: {' -> '.join(map(str, path))}")
        await self._store_edges(pairs)

    async def _run_bfs(self, source: int, target: int) -> List[int]:
        """
        Breadth-first search from source

        Nodes are expanded strictly in FIFO order so the first path that
        reaches target has the minimum number of hops.
        """
        logger.info(f"Running BFS from {source} to {target} with max depth {self.max_depth}")

        queue = deque([(source, [source], 0)])
        visited = {source}
        nodes_explored = 0
        max_depth_reached = 0

        while queue and nodes_explored < self.max_queue_size:
            fid, path, depth = queue.popleft()
            nodes_explored += 1

            if depth > max_depth_reached:
                max_depth_reached = depth
                logger.info(f"Reached new depth level: {depth}")

            if nodes_explored % 100 == 0:
                logger.info(
                    f"Explored {nodes_explored} nodes, queue size: {len(queue)}, "
                    f"current depth: {depth}, max depth reached: {max_depth_reached}"
                )

            if depth >= self.max_depth:
                continue

            try:
                neighbors = await self._fetch_neighbors(fid, depth)
            except NodeExplorationFailure as e:
                if fid == source:
                    raise ProviderUnavailable(f"Could not fetch connections for {source}: {e.cause}") from e
                logger.error(
                    str(e),
                    extra={"node": fid, "depth": depth, "nodes_explored": nodes_explored}
                )
                continue

            logger.debug(f"Found {len(neighbors)} connections for {fid} at depth {depth}")

            for i in range(0, len(neighbors), self.batch_size):
                batch = neighbors[i:i + self.batch_size]
                await self._store_edges([(fid, neighbor) for neighbor in batch])

                for neighbor in batch:
                    if neighbor == target:
                        final_path = path + [target]
                        logger.info(
                            f"Found path! Length: {len(final_path)}, "
                            f"Path: {' -> '.join(map(str, final_path))}, nodes explored: {nodes_explored}"
                        )
                        await self._store_path(final_path)
                        return final_path

                    if neighbor not in visited:
                        visited.add(neighbor)
                        queue.append((neighbor, path + [neighbor], depth + 1))

        hit_queue_limit = bool(queue) and nodes_explored >= self.max_queue_size
        if hit_queue_limit:
            logger.warning(
                f"Search terminated after reaching max queue size ({self.max_queue_size})",
                extra={"source": source, "target": target, "nodes_explored": nodes_explored}
            )
        else:
            logger.info(
                f"Search space exhausted. Max depth reached: {max_depth_reached}/{self.max_depth}",
                extra={"source": source, "target": target, "nodes_explored": nodes_explored}
            )

        raise PathNotFound(source, target, nodes_explored, max_depth_reached, hit_queue_limit)
