from fastapi import Header

from marginalia.errors import AuthenticationError
from marginalia.server.runtime import get_runtime


async def require_user(authorization: str | None = Header(default=None)) -> str:
    """Resolve the bearer token to a user id. The body is never trusted for identity."""
    if not authorization:
        raise AuthenticationError("Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Expected a bearer token")

    user_id = await get_runtime().sessions.resolve(token)
    if user_id is None:
        raise AuthenticationError("Unknown or expired session")
    return user_id
