from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.utils.security import verify_token

security = HTTPBearer()


def get_current_actor(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """
    The session layer issues the token; we only need to know who is acting
    so it can be written to the change log.
    """
    email = verify_token(credentials.credentials)
    if not email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return email
