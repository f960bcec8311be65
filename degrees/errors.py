"""
Exception types shared by the path finder, the connection store and the
graph provider.

Only InvalidInput, ProviderUnavailable, PathNotFound and SearchTimeout are
meant to reach callers of the path finder. The others are raised internally,
logged and absorbed.
"""


class DegreesError(Exception):
    """Base class for all application errors"""


class InvalidInput(DegreesError, ValueError):
    """An identity or identifier was missing or not a positive integer"""


class ProviderError(DegreesError):
    """The graph provider failed to answer a request"""


class ProviderUnavailable(ProviderError):
    """The graph provider could not be reached for the initial lookups"""


class UserNotFound(ProviderError):
    """The graph provider has no user for the given identity or handle"""


class NodeExplorationFailure(DegreesError):
    """Neighbors of a single node could not be fetched during a search"""

    def __init__(self, identity: int, depth: int, cause: Exception):
        super().__init__(f"Could not explore {identity} at depth {depth}: {cause}")
        self.identity = identity
        self.depth = depth
        self.cause = cause


class PathNotFound(DegreesError):
    """The search space was exhausted without reaching the target"""

    def __init__(self, source: int, target: int, nodes_explored: int,
                 max_depth_reached: int, hit_queue_limit: bool = False):
        reason = "queue size limit reached" if hit_queue_limit else "search space exhausted"
        super().__init__(
            f"No path found between {source} and {target} after exploring "
            f"{nodes_explored} nodes (max depth reached: {max_depth_reached}, {reason})"
        )
        self.source = source
        self.target = target
        self.nodes_explored = nodes_explored
        self.max_depth_reached = max_depth_reached
        self.hit_queue_limit = hit_queue_limit


class SearchTimeout(DegreesError):
    """The wall-clock budget for a search was exceeded"""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Path finding timeout after {timeout_seconds} seconds")
        self.timeout_seconds = timeout_seconds


class StorageError(DegreesError):
    """A connection store write failed"""


class CacheWriteFailure(StorageError):
    """Caching an edge or a search result failed during a search"""


class ResetNotPermitted(StorageError):
    """A destructive reset was requested in production mode"""
