"""
Application configuration and environment variables
"""
import os
from pathlib import Path

# Data directory configuration
if os.environ.get('RAILWAY_ENVIRONMENT_NAME'):
    DATA_DIR = Path('/data')
else:
    DATA_DIR = Path(os.environ.get('DATA_DIR', './data'))

# Ensure data directory exists
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Database configuration
DATABASE_PATH = Path(os.environ.get('DATABASE_PATH', DATA_DIR / 'connections.db'))

# Operating mode; destructive admin operations are only allowed outside production
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'development').lower()
IS_PRODUCTION = ENVIRONMENT == 'production'

# Social graph provider (Neynar)
NEYNAR_API_KEY = os.environ.get('NEYNAR_API_KEY', '')
NEYNAR_BASE_URL = os.environ.get('NEYNAR_BASE_URL', 'https://api.neynar.com/v2/farcaster')
NEIGHBOR_PAGE_SIZE = int(os.environ.get('NEIGHBOR_PAGE_SIZE', 100))
NEIGHBOR_MAX_PAGES = int(os.environ.get('NEIGHBOR_MAX_PAGES', 5))

# Path finding limits
MAX_DEPTH = int(os.environ.get('MAX_DEPTH', 6))
MAX_QUEUE_SIZE = int(os.environ.get('MAX_QUEUE_SIZE', 10000))
CONNECTION_BATCH_SIZE = int(os.environ.get('CONNECTION_BATCH_SIZE', 100))
SEARCH_TIMEOUT_SECONDS = float(os.environ.get('SEARCH_TIMEOUT_SECONDS', 60))

# API configuration
API_TITLE = "Degrees of Separation API"
API_VERSION = "1.0.0"

# Rate limits (slowapi syntax)
CONNECTION_RATE_LIMIT = os.environ.get('CONNECTION_RATE_LIMIT', '10/minute')
LISTING_RATE_LIMIT = os.environ.get('LISTING_RATE_LIMIT', '30/minute')

# CORS origins
CORS_ORIGINS = [
    "http://localhost:8000",
    "http://127.0.0.1:8000",
]
