"""
Wire schemas：WebSocket frame 與 REST response 的格式

WebSocket frame（雙向相同）：
    {"event": "<name>", "data": {...}}

欄位名稱沿用前端既有的 camelCase（roomCode / playerName）
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import RoomPhase


# ============ WebSocket inbound ============

class ClientFrame(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


class JoinRoomPayload(BaseModel):
    room_code: str = Field(alias="roomCode")
    player_name: str = Field(alias="playerName")

    model_config = ConfigDict(populate_by_name=True)


class BuzzPayload(BaseModel):
    """
    buzz 的 payload

    playerName 是舊版前端會送的欄位，只接受不採用：
    玩家身分一律以連線綁定的名稱為準，避免替別人 buzz
    """
    room_code: str = Field(alias="roomCode")
    epoch: Optional[int] = None
    player_name: Optional[str] = Field(default=None, alias="playerName")

    model_config = ConfigDict(populate_by_name=True)


# ============ REST ============

class RoomStateResponse(BaseModel):
    code: str
    phase: RoomPhase
    players: List[str]
    winner: Optional[str] = None
    round_epoch: int


class RoomCodeResponse(BaseModel):
    code: str


class HealthResponse(BaseModel):
    status: str
    rooms: int
