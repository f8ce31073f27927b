from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from support_chat.config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from support_chat.exceptions import AuthenticationError


def create_access_token(subject: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a token the way the auth service does. Used by tests and local tooling."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": str(subject), "role": role, "exp": expire}
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise AuthenticationError("Could not validate credentials") from exc
    if not payload.get("sub") or not payload.get("role"):
        raise AuthenticationError("Could not validate credentials")
    return payload
