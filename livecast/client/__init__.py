"""
livecast.client
~~~~~~~~~~~~~~~
参与者侧：信令通道、媒体会话协商与房间状态机。
"""
from livecast.client.negotiator import NegotiationState, SessionNegotiator
from livecast.client.room_client import ClientState, RoomClient

__all__ = ["ClientState", "NegotiationState", "RoomClient", "SessionNegotiator"]
