from fastapi import APIRouter, Depends

from realtime_chat.utils.delivery_hub import DeliveryHub
from realtime_chat.utils.dependencies import get_current_user, get_hub


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}")
async def presence(user_id: str, current_user: dict = Depends(get_current_user), hub: DeliveryHub = Depends(get_hub)):
    """Online status as seen by this process's hub: online while any connection is joined."""
    connections = hub.room_size(user_id)
    return {"userId": user_id, "online": connections > 0, "connections": connections}
