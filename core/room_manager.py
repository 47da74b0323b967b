"""
Room Manager：管理 Room 的成員與回合生命週期

職責：
1. 玩家加入 / 離開房間（名稱唯一性、成員廣播、空房回收）
2. 開始回合 / 重置回合（狀態轉換 + 廣播）
3. 查詢房間狀態快照

原則：
- 單一職責：只管成員與回合，不管誰先搶答（交給 ArbitrationEngine）
- 消除特殊情況：所有階段變更都經過 RoomStateMachine
- 所有「先讀再寫」都在 room_lock 之內完成，廣播只進佇列
"""
import logging
from typing import Any, Dict, Optional, Tuple

from models import ConnectionHandle, EventType, Member, Room, RoomPhase
from core.broadcast import BroadcastDispatcher, dispatcher as default_dispatcher
from core.exceptions import NameTaken, PhaseInvalid, RoomNotFound
from core.locks import room_lock
from core.room_registry import RoomRegistry, registry as default_registry
from core.state_machine import RoomStateMachine
from services.naming_service import normalize_player_name

logger = logging.getLogger(__name__)


def room_snapshot(room: Room) -> Dict[str, Any]:
    """房間目前狀態（呼叫者應持有房間鎖，確保各欄位一致）"""
    return {
        "code": room.code,
        "phase": room.phase,
        "players": room.player_names(),
        "winner": room.current_winner,
        "round_epoch": room.round_epoch,
    }


class RoomManager:
    """Room 成員與回合管理器"""

    def __init__(
        self,
        registry: Optional[RoomRegistry] = None,
        dispatcher: Optional[BroadcastDispatcher] = None
    ):
        self.registry = registry or default_registry
        self.dispatcher = dispatcher or default_dispatcher

    async def join(
        self,
        code: str,
        name: str,
        connection: ConnectionHandle
    ) -> Tuple[Room, Member]:
        """
        玩家加入房間（任何階段都可以加入）

        流程：
        1. 透過 Registry 取得或建立房間
        2. 鎖定房間，檢查名稱唯一性（大小寫敏感）
        3. 指派 join_sequence，加入成員
        4. 廣播 lobby_update（完整名單）
        5. 晚到的玩家另外補送目前回合狀態

        參數：
            code: 房間代碼（未正規化）
            name: 玩家顯示名稱
            connection: 玩家的連線（只用來投遞事件）

        返回：
            (Room, Member) tuple

        異常：
            InvalidRoomCode / InvalidPlayerName: 輸入格式錯誤
            NameTaken: 名稱已被使用
            RoomCapacityExceeded: 房間數量已達上限
        """
        name = normalize_player_name(name)

        while True:
            room = await self.registry.get_or_create(code)
            async with room_lock(room):
                if room.evicted:
                    # 拿到房間後、上鎖前剛好被回收，重新取得
                    logger.debug(f"Room {room.code} was evicted before join, retrying")
                    continue

                if name in room.members:
                    raise NameTaken(name)

                room.join_counter += 1
                member = Member(
                    name=name,
                    join_sequence=room.join_counter,
                    connection=connection
                )
                room.members[name] = member

                logger.info(
                    f"Player {name} joined room {room.code} "
                    f"(seq={member.join_sequence}, members={len(room.members)}, "
                    f"phase={room.phase.value})"
                )

                self.dispatcher.publish(
                    room,
                    EventType.LOBBY_UPDATE,
                    {"players": room.player_names()}
                )
                self._sync_late_joiner(room, member)
                return room, member

    def _sync_late_joiner(self, room: Room, member: Member) -> None:
        """回合進行中才加入的玩家，補送目前的回合事件"""
        if room.phase == RoomPhase.LOBBY:
            return

        self.dispatcher.send_to(
            member.connection,
            EventType.GAME_STARTED,
            round_epoch=room.round_epoch
        )
        if room.phase == RoomPhase.ROUND_WON:
            self.dispatcher.send_to(
                member.connection,
                EventType.FIRST_BUZZ,
                {"player": room.current_winner},
                round_epoch=room.round_epoch
            )

    async def leave(
        self,
        code: str,
        name: str,
        connection: Optional[ConnectionHandle] = None
    ) -> bool:
        """
        玩家離開房間（冪等）

        - 不在房間內：no-op
        - 有提供 connection 時，只移除屬於這條連線的成員，
          避免舊連線的斷線處理把同名的新連線踢掉
        - 離開的玩家如果是本回合贏家，結果保留到下一次重置

        返回：
            True 如果真的移除了成員

        異常：
            RoomNotFound: 房間不存在
        """
        room = self.registry.get(code)

        async with room_lock(room):
            member = room.members.get(name)
            if member is None:
                return False
            if connection is not None and member.connection is not connection:
                return False

            del room.members[name]
            logger.info(f"Player {name} left room {room.code} (members={len(room.members)})")

            self.dispatcher.publish(
                room,
                EventType.LOBBY_UPDATE,
                {"players": room.player_names()}
            )
            now_empty = room.is_empty()

        if now_empty:
            await self.registry.schedule_eviction(room)
        return True

    async def start_round(self, code: str) -> Dict[str, Any]:
        """
        開始回合（LOBBY / ROUND_WON -> ACTIVE）

        已經是 ACTIVE 時為 no-op：不會讓 round_epoch 再加一，
        否則進行中的合法 buzz 會被當成過期

        返回：
            房間狀態快照

        異常：
            RoomNotFound: 房間不存在
        """
        room = self.registry.get(code)

        async with room_lock(room):
            if room.evicted:
                raise RoomNotFound(room.code)
            if room.phase == RoomPhase.ACTIVE:
                logger.info(f"Round already active in room {room.code}, ignoring start")
                return room_snapshot(room)

            RoomStateMachine.transition(room, RoomPhase.ACTIVE)
            self.dispatcher.publish(room, EventType.GAME_STARTED)
            logger.info(f"Round {room.round_epoch} started in room {room.code}")
            return room_snapshot(room)

    async def reset_round(self, code: str) -> Dict[str, Any]:
        """
        重置回合（ROUND_WON -> ACTIVE）

        - ACTIVE：no-op
        - LOBBY：遊戲尚未開始，不能重置

        返回：
            房間狀態快照

        異常：
            RoomNotFound: 房間不存在
            PhaseInvalid: 房間仍在 LOBBY
        """
        room = self.registry.get(code)

        async with room_lock(room):
            if room.evicted:
                raise RoomNotFound(room.code)
            if room.phase == RoomPhase.ACTIVE:
                logger.info(f"Round already active in room {room.code}, ignoring reset")
                return room_snapshot(room)
            if room.phase == RoomPhase.LOBBY:
                raise PhaseInvalid(f"Room {room.code} has not started yet")

            RoomStateMachine.transition(room, RoomPhase.ACTIVE)
            self.dispatcher.publish(room, EventType.ROUND_RESET)
            logger.info(f"Round reset in room {room.code}, now round {room.round_epoch}")
            return room_snapshot(room)

    async def get_state(self, code: str) -> Dict[str, Any]:
        """
        取得房間狀態快照

        異常：
            RoomNotFound: 房間不存在
        """
        room = self.registry.get(code)
        async with room_lock(room):
            if room.evicted:
                raise RoomNotFound(room.code)
            return room_snapshot(room)


room_manager = RoomManager()
