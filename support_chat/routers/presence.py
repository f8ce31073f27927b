from fastapi import APIRouter, Depends, Request

from support_chat.exceptions import ForbiddenError
from support_chat.schemas.user import CurrentUser
from support_chat.utils.dependencies import get_connection_manager, get_current_user
from support_chat.utils.websocket_manager import ConnectionManager


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("")
async def online_users(current_user: CurrentUser = Depends(get_current_user), connections: ConnectionManager = Depends(get_connection_manager)):
    if not current_user.is_admin:
        raise ForbiddenError("Only admins can list online users")
    return {"online": await connections.online_identities()}


@router.get("/{user_id}")
async def presence(
    user_id: str,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    connections: ConnectionManager = Depends(get_connection_manager),
):
    """Online if this process holds a channel for the user, or the relay saw a heartbeat elsewhere."""
    online = await connections.is_online(user_id)
    bus = request.app.state.bus
    if not online and getattr(bus, "enabled", False):
        online = await bus.is_present(user_id)
    return {"user_id": user_id, "online": bool(online)}
