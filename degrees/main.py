from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import Optional
import logging

from degrees import config
from degrees.database import ConnectionStore
from degrees.errors import InvalidInput, ProviderError, ResetNotPermitted, StorageError
from degrees.models import (
    ConnectionRequest, ConnectionResponse, EdgeListResponse,
    SearchListResponse, SearchRecord, StoreStats,
)
from degrees.pathfinder import PathFinder
from degrees.provider import NeynarProvider, create_http_client
from degrees.service import MESSAGE_UNVERIFIED, ConnectionService

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(title=config.API_TITLE, version=config.API_VERSION)

# Add rate limit exception handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware - restrict to specific origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# Security headers middleware
@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.on_event("startup")
async def startup():
    """Open the connection store and build the shared components"""
    store = ConnectionStore(config.DATABASE_PATH, allow_reset=not config.IS_PRODUCTION)
    await store.open()

    http_client = create_http_client(config.NEYNAR_API_KEY)
    provider = NeynarProvider(http_client)
    finder = PathFinder(store, provider)

    app.state.store = store
    app.state.http_client = http_client
    app.state.service = ConnectionService(finder, provider, store)

    logger.info("Application started", extra={"environment": config.ENVIRONMENT})


@app.on_event("shutdown")
async def shutdown():
    """Cleanup: Close the shared HTTP client on application shutdown"""
    http_client = getattr(app.state, "http_client", None)
    if http_client is not None:
        await http_client.aclose()
        app.state.http_client = None


def get_store(request: Request) -> ConnectionStore:
    return request.app.state.store


def get_service(request: Request) -> ConnectionService:
    return request.app.state.service


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/connection", response_model=ConnectionResponse)
@limiter.limit(config.CONNECTION_RATE_LIMIT)
async def find_connection(request: Request, connection_request: ConnectionRequest,
                          service: ConnectionService = Depends(get_service)):
    """
    Find the shortest chain of follows between two users

    Both sides may be given as a numeric identity or a handle.
    """
    logger.info(
        "Starting connection search",
        extra={"source": connection_request.source, "target": connection_request.target}
    )

    try:
        source = await service.resolve_identifier(connection_request.source)
        target = await service.resolve_identifier(connection_request.target)
    except (InvalidInput, ProviderError) as e:
        logger.warning(f"Could not resolve identifiers: {e}")
        return ConnectionResponse(success=False, status="unverified", message=MESSAGE_UNVERIFIED)

    result = await service.resolve(source, target)

    users = await service.describe_path(result.path) if result.path else []

    return ConnectionResponse(
        success=result.success,
        status=result.status,
        message=result.message,
        search_id=result.search_id,
        path=result.path,
        users=users,
        degree=result.degree
    )


@app.get("/api/connections/{fid}", response_model=EdgeListResponse)
async def get_connections(fid: int, store: ConnectionStore = Depends(get_store)):
    """Stored connections for one identity, in either direction"""
    if fid <= 0:
        raise HTTPException(status_code=400, detail="Identity must be a positive integer")

    edges = await store.edges_from(fid)
    connections = list(dict.fromkeys(edge.other(fid) for edge in edges))
    return EdgeListResponse(identity=fid, connections=connections, edges=edges)


@app.get("/api/searches", response_model=SearchListResponse)
@limiter.limit(config.LISTING_RATE_LIMIT)
async def get_searches(
    request: Request,
    from_fid: Optional[int] = Query(default=None, gt=0),
    to_fid: Optional[int] = Query(default=None, gt=0),
    limit: int = Query(default=100, ge=1, le=500),
    store: ConnectionStore = Depends(get_store)
):
    """
    Get recent searches, most recent first

    - **from_fid**: Only searches starting at this identity
    - **to_fid**: Only searches ending at this identity
    - **limit**: Maximum number of results to return (1-500, default: 100)
    """
    searches = await store.recent_searches(from_fid=from_fid, to_fid=to_fid, limit=limit)
    return SearchListResponse(searches=searches)


@app.get("/api/searches/{search_id}", response_model=SearchRecord)
async def get_search(search_id: int, store: ConnectionStore = Depends(get_store)):
    """Get a specific search by ID"""
    search = await store.get_search(search_id)

    if not search:
        raise HTTPException(status_code=404, detail='Search not found')

    return search


@app.get("/api/stats", response_model=StoreStats)
async def get_stats(store: ConnectionStore = Depends(get_store)):
    """
    Get connection store statistics

    Returns:
    - Number of stored edges
    - Number of logged searches
    - Average degree of logged searches
    """
    return StoreStats(**await store.stats())


if not config.IS_PRODUCTION:

    @app.post("/admin/reset-db")
    async def reset_db(store: ConnectionStore = Depends(get_store)):
        """Drop all stored edges and searches (development only)"""
        try:
            await store.reset_all()
        except ResetNotPermitted as e:
            raise HTTPException(status_code=403, detail=str(e))
        except StorageError as e:
            logger.error(f"Error resetting database: {e}")
            raise HTTPException(status_code=500, detail="Database reset failed")

        logger.info("Database reset successfully")
        return {"status": "reset"}


if __name__ == '__main__':
    import uvicorn
    import os
    port = int(os.environ.get('PORT', 8000))
    uvicorn.run(app, host='0.0.0.0', port=port)
