"""
livecast.api.rooms
~~~~~~~~~~~~~~~~~~

直播间 REST 接口 —— 浏览直播列表 + ICE 配置。

路由前缀 ``/api``。

端点:
  - ``GET  /rooms``              → 获取直播中房间列表
  - ``GET  /rooms/{room_id}``    → 获取房间详情
  - ``GET  /ice-config``         → 获取 ICE 服务器配置
"""
from fastapi import APIRouter, Depends, Request

from livecast.api.deps import get_room_registry
from livecast.core.rate_limit import limiter
from livecast.core.settings import settings
from livecast.schemas.api_response import ApiResponse
from livecast.schemas.signaling import RoomSummary
from livecast.services.room_registry import RoomRegistry

router: APIRouter = APIRouter()


@router.get("/rooms", summary="获取直播中房间列表", response_model=ApiResponse[list[RoomSummary]])
@limiter.limit("10/second")
async def list_rooms(request: Request, registry: RoomRegistry = Depends(get_room_registry)):
    """返回所有正在直播的房间。"""
    return ApiResponse.ok(data=registry.list_rooms())


@router.get("/rooms/{room_id}", summary="获取房间详情", response_model=ApiResponse[RoomSummary])
@limiter.limit("5/second")
async def room_info(request: Request, room_id: str, registry: RoomRegistry = Depends(get_room_registry)):
    """返回指定直播间的摘要（主播、观众数）。

    房间不存在时抛出 ``RoomNotFound``，由全局处理器转换为失败应答。

    Args:
        room_id: 直播间唯一标识。
    """
    room = registry.get_room(room_id)
    return ApiResponse.ok(data=room.info())


@router.get("/ice-config", summary="获取 ICE 服务器配置", response_model=ApiResponse[dict])
async def ice_config():
    """下发 STUN / TURN 服务器列表，供客户端创建媒体会话。"""
    return ApiResponse.ok(data={"iceServers": settings.ice_servers()})
