from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi import Depends, HTTPException, Request, status
from config import config
import logging
import secrets

logger = logging.getLogger(__name__)

# auto_error off so a missing header gets the same 401 as a bad token
bearer_scheme = HTTPBearer(auto_error=False)


def is_valid_token(token: str) -> bool:
    return any(secrets.compare_digest(token, valid) for valid in config.valid_tokens)


def get_current_client(request: Request, credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)) -> str:
    """Accepts analytics clients and report readers holding one of VALID_TOKENS."""
    if credentials is None or credentials.scheme.lower() != "bearer" or not is_valid_token(credentials.credentials):
        logger.warning("Rejected %s %s: missing or unknown bearer token.", request.method, request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing Bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials
