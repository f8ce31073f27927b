from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from support_chat.exceptions import AuthenticationError
from support_chat.models.user import Role
from support_chat.schemas.user import CurrentUser
from support_chat.utils.security import decode_access_token
from support_chat.utils.websocket_manager import ConnectionManager


http_bearer = HTTPBearer(auto_error=False)


def current_user_from_token(token: Optional[str]) -> CurrentUser:
    if not token:
        raise AuthenticationError("Authentication required")
    payload = decode_access_token(token)
    try:
        role = Role(payload["role"])
    except ValueError as exc:
        raise AuthenticationError("Unknown role in token") from exc
    return CurrentUser(id=str(payload["sub"]), role=role)


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer)) -> CurrentUser:
    return current_user_from_token(credentials.credentials if credentials else None)


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connections
