"""
Room 狀態機：集中管理所有階段轉換

合法轉換：
    LOBBY     -> ACTIVE      (start_round)
    ACTIVE    -> ROUND_WON   (仲裁產生贏家)
    ROUND_WON -> ACTIVE      (start_round / reset_round)

LOBBY 一旦離開就不會再回來；要重新開一局請開新房間。

所有轉換都必須在 room_lock 之內進行。
"""
import logging
from typing import Dict, FrozenSet, Optional

from models import Room, RoomPhase
from core.exceptions import PhaseInvalid
from core.locks import assert_locked

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[RoomPhase, FrozenSet[RoomPhase]] = {
    RoomPhase.LOBBY: frozenset({RoomPhase.ACTIVE}),
    RoomPhase.ACTIVE: frozenset({RoomPhase.ROUND_WON}),
    RoomPhase.ROUND_WON: frozenset({RoomPhase.ACTIVE}),
}


class RoomStateMachine:
    """Room 階段轉換的唯一入口"""

    @staticmethod
    def can_transition(current: RoomPhase, target: RoomPhase) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, frozenset())

    @staticmethod
    def transition(room: Room, target: RoomPhase, winner: Optional[str] = None) -> Room:
        """
        執行一次階段轉換，並維護 winner / round_epoch 不變量

        - 進入 ACTIVE：清除 current_winner，round_epoch + 1
        - 進入 ROUND_WON：設定 current_winner（必須提供 winner）

        參數：
            room: 已被呼叫者鎖定的 Room
            target: 目標階段
            winner: 進入 ROUND_WON 時的贏家名稱

        返回：
            更新後的 Room

        異常：
            PhaseInvalid: 轉換不合法
        """
        assert_locked(room)

        current = room.phase
        if not RoomStateMachine.can_transition(current, target):
            raise PhaseInvalid(
                f"Cannot transition room {room.code} from {current.value} to {target.value}"
            )

        if target == RoomPhase.ROUND_WON:
            if winner is None:
                raise ValueError("Transition to ROUND_WON requires a winner")
            room.current_winner = winner
        else:
            room.current_winner = None
            room.round_epoch += 1

        room.phase = target
        logger.info(
            f"Room {room.code} state changed: {current.value} -> {target.value} "
            f"(epoch={room.round_epoch})"
        )
        return room
