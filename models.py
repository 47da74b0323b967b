"""
資料模型：Room、Member 與對外事件

所有狀態都只存在於記憶體中，生命週期跟著 Room 走；
Room 內部狀態只能在該房間的鎖（core.locks.room_lock）之內修改。
"""
import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol


class RoomPhase(str, enum.Enum):
    """房間階段：LOBBY -> ACTIVE <-> ROUND_WON"""
    LOBBY = "lobby"
    ACTIVE = "active"
    ROUND_WON = "round_won"


class EventType(str, enum.Enum):
    """對外事件名稱（wire contract）"""
    LOBBY_UPDATE = "lobby_update"
    GAME_STARTED = "game_started"
    FIRST_BUZZ = "first_buzz"
    ROUND_RESET = "round_reset"
    BUZZ_RESULT = "buzz_result"
    ERROR = "error"
    PONG = "pong"


@dataclass(frozen=True)
class OutboundEvent:
    """
    要送給某條連線的一個事件

    round_epoch 是事件產生當下房間的回合編號，不會出現在 wire 上；
    Gateway 用它記住每條連線最後看到的回合，替 buzz 蓋上 epoch。
    """
    event: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    round_epoch: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        return {"event": self.event.value, "data": self.data}


class ConnectionHandle(Protocol):
    """
    核心層眼中的連線：只能投遞事件，不能看內部

    deliver() 必須是非阻塞的（只放進佇列），失敗時直接丟出例外。
    """

    def deliver(self, event: OutboundEvent) -> None:
        ...


@dataclass
class Member:
    name: str
    join_sequence: int
    connection: ConnectionHandle


@dataclass
class Room:
    code: str
    phase: RoomPhase = RoomPhase.LOBBY
    members: Dict[str, Member] = field(default_factory=dict)
    current_winner: Optional[str] = None
    round_epoch: int = 0
    # 只給 join 用的遞增計數器，離開的玩家不會讓序號被重複使用
    join_counter: int = 0
    # 已從 registry 移除；拿到舊參照的呼叫者必須重新 get_or_create
    evicted: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    eviction_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def player_names(self) -> List[str]:
        """依 join_sequence 排序的玩家名單"""
        ordered = sorted(self.members.values(), key=lambda m: m.join_sequence)
        return [m.name for m in ordered]

    def is_empty(self) -> bool:
        return not self.members


@dataclass(frozen=True)
class BuzzOutcome:
    """
    一次 buzz 的仲裁結果

    won=True 只會在每個 round_epoch 出現一次；
    won=False 代表「已經有人搶先」，winner 是那位玩家。
    """
    won: bool
    winner: str
    round_epoch: int
