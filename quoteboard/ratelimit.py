"""Per-client request limits for the API.

Every route counts against one application-wide budget per client, checked
by ``SlowAPIMiddleware``. Register and login also draw from a shared auth
budget. Limits are read from config on each request.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from quoteboard.config import get_config

logger = logging.getLogger(__name__)

AUTH_LIMIT_MESSAGE = "Too many authentication attempts, please try again later."
API_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."


def _api_limit() -> str:
    return get_config().rate_limit.api


def _auth_limit() -> str:
    return get_config().rate_limit.auth


limiter = Limiter(key_func=get_remote_address, application_limits=[_api_limit])

auth_limit = limiter.shared_limit(_auth_limit, scope="auth", error_message=AUTH_LIMIT_MESSAGE)


# Plain function: the middleware calls it without awaiting
def rate_limit_exceeded(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    message = exc.limit.error_message or API_LIMIT_MESSAGE
    logger.warning(
        f"Rate limit hit by {get_remote_address(request)} on {request.method} {request.url.path}"
    )
    return JSONResponse(status_code=429, content={"message": message})
