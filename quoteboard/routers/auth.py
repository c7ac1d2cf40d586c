"""
Registration and login

Both routes share one rate-limit budget per client address.
"""

from fastapi import APIRouter, Request

from quoteboard.auth import authenticate, create_access_token, register_user
from quoteboard.db.connection import get_session
from quoteboard.ratelimit import auth_limit
from quoteboard.schemas import Credentials, TokenResponse, UserRead

router = APIRouter(prefix="/auth", tags=["auth"])


def _token_response(user) -> TokenResponse:
    return TokenResponse(token=create_access_token(user), user=UserRead.model_validate(user))


@router.post("/register", response_model=TokenResponse, status_code=201)
@auth_limit
async def register(request: Request, body: Credentials):
    """Create an account and return a token for it."""
    async with get_session() as session:
        user = await register_user(session, body.username, body.password)
    return _token_response(user)


@router.post("/login", response_model=TokenResponse)
@auth_limit
async def login(request: Request, body: Credentials):
    async with get_session() as session:
        user = await authenticate(session, body.username, body.password)
    return _token_response(user)
