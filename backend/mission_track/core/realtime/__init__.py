"""
Realtime Layer
==============

Websocket sessions, team rooms and typed wire events.
"""

from .events import ServerEvent, team_room
from .gateway import RealtimeGateway
from .router import ClientSession, RealtimeRouter

__all__ = [
    "ClientSession",
    "RealtimeGateway",
    "RealtimeRouter",
    "ServerEvent",
    "team_room",
]
