# auth.py - API key authentication for FastAPI
import time
import secrets
import logging
from collections import defaultdict
from typing import Optional
from fastapi import Request, HTTPException

logger = logging.getLogger(__name__)

# Rate limiting state for failed attempts
_rate_limits: dict = defaultdict(list)
RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX = 5  # failed attempts per window

_api_key: Optional[str] = None


def set_api_key(api_key: Optional[str]):
    """Set the key callers must send in the X-API-Key header."""
    global _api_key
    _api_key = api_key or None
    _rate_limits.clear()
    if not _api_key:
        logger.warning("No API_KEY configured, all API routes except health will answer 503")


def check_rate_limit(ip: str) -> bool:
    """Returns True if rate limited, False if OK."""
    now = time.time()
    recent = [t for t in _rate_limits.get(ip, ()) if now - t < RATE_LIMIT_WINDOW]
    if recent:
        _rate_limits[ip] = recent
    else:
        _rate_limits.pop(ip, None)
    return len(recent) >= RATE_LIMIT_MAX


def _record_failure(ip: str):
    now = time.time()
    # Forget clients whose failures have all expired
    for stale_ip in [k for k, times in _rate_limits.items() if now - times[-1] >= RATE_LIMIT_WINDOW]:
        del _rate_limits[stale_ip]
    _rate_limits[ip].append(now)


async def require_api_key(request: Request):
    """Dependency that requires a valid X-API-Key header."""
    if not _api_key:
        raise HTTPException(status_code=503, detail="API key not configured")

    client_ip = get_client_ip(request)
    if check_rate_limit(client_ip):
        raise HTTPException(status_code=429, detail="Too many failed attempts")

    api_key = request.headers.get('X-API-Key')
    if api_key and secrets.compare_digest(api_key, _api_key):
        return True

    _record_failure(client_ip)
    logger.warning(f"Rejected request from {client_ip}: invalid API key")
    raise HTTPException(status_code=401, detail="Unauthorized")


def get_client_ip(request: Request) -> str:
    """Get client IP from request. Uses direct connection IP only (X-Forwarded-For is spoofable)."""
    return request.client.host if request.client else '127.0.0.1'
