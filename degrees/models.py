from pydantic import BaseModel, Field, field_validator
from typing import Literal, Optional, List
import re


class User(BaseModel):
    """Social graph member as returned by the graph provider"""
    identity: int = Field(..., gt=0)
    handle: str
    display_name: str
    avatar_url: str = ""


class Edge(BaseModel):
    """Observed adjacency between two identities"""
    from_: int = Field(..., alias="from")
    to: int
    last_updated: str

    class Config:
        populate_by_name = True

    def other(self, identity: int) -> int:
        """Endpoint on the far side of the edge from identity"""
        return self.to if self.from_ == identity else self.from_


class SearchRecord(BaseModel):
    """Logged search outcome, replayable as a cached path"""
    id: int
    searcher: Optional[int] = None
    from_: int = Field(..., alias="from")
    to: int
    path: List[int]
    created_at: str

    class Config:
        populate_by_name = True

    @property
    def degree(self) -> int:
        return len(self.path) - 1


class ConnectionResult(BaseModel):
    """Outcome of resolving a connection between two identities"""
    status: Literal["found", "self", "not_found", "timeout", "unverified"]
    source: Optional[int] = None
    target: Optional[int] = None
    path: List[int] = []
    degree: Optional[int] = None
    message: str = ""
    search_id: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status in ("found", "self")


class ConnectionRequest(BaseModel):
    """Request model for connection lookups"""
    source: str = Field(..., min_length=1, max_length=64, description="Searching user (identity or handle)")
    target: str = Field(..., min_length=1, max_length=64, description="Target user (identity or handle)")

    @field_validator('source', 'target')
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """
        Validate and sanitize identifiers:
        - Strip whitespace
        - Allow an optional leading '@'
        - Allow letters, numbers, dots, hyphens and underscores
        """
        v = v.strip()

        if len(v) < 1:
            raise ValueError("Identifier cannot be empty")

        if not re.match(r'^@?[a-zA-Z0-9._\-]+$', v):
            raise ValueError("Identifier contains invalid characters. Use a numeric id or a handle.")

        return v


class ConnectionResponse(BaseModel):
    """Response model for connection lookups"""
    success: bool
    status: str
    message: str
    search_id: Optional[int] = None
    path: List[int] = []
    users: List[User] = []
    degree: Optional[int] = None


class SearchListResponse(BaseModel):
    """Response model for list of searches"""
    searches: List[SearchRecord]


class EdgeListResponse(BaseModel):
    """Response model for stored connections of one identity"""
    identity: int
    connections: List[int]
    edges: List[Edge]


class StoreStats(BaseModel):
    """Connection store statistics"""
    total_edges: int
    total_searches: int
    avg_degree: Optional[float] = None
