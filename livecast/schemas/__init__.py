"""
livecast.schemas
~~~~~~~~~~~~~~~~
HTTP 应答体与信令事件载荷模型。
"""
from livecast.schemas.api_response import ApiResponse
from livecast.schemas.signaling import (
    EventFrame,
    RoomSummary,
    SignalEvent,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()

__all__ = ["ApiResponse", "EventFrame", "RoomSummary", "SignalEvent"]
