"""
Arbitration Engine：決定每一回合唯一的搶答者

並發安全：
- 檢查與寫入都在 room_lock 之內完成，
  「階段轉為 ROUND_WON」與「設定 current_winner」是同一個臨界區
- 同一個 round_epoch 只會有一個呼叫者拿到 won=True，
  其他同回合的呼叫者拿到 won=False（已經有人搶先）
- 真正同時到達的兩個 buzz，誰先拿到鎖誰贏（不保證公平，只保證唯一）
"""
import logging
from typing import Optional

from models import BuzzOutcome, EventType, RoomPhase
from core.broadcast import BroadcastDispatcher, dispatcher as default_dispatcher
from core.exceptions import PhaseInvalid, RoomNotFound, StaleRound, UnknownMember
from core.locks import room_lock
from core.room_registry import RoomRegistry, registry as default_registry
from core.state_machine import RoomStateMachine

logger = logging.getLogger(__name__)


class ArbitrationEngine:
    """Buzz 仲裁器"""

    def __init__(
        self,
        registry: Optional[RoomRegistry] = None,
        dispatcher: Optional[BroadcastDispatcher] = None
    ):
        self.registry = registry or default_registry
        self.dispatcher = dispatcher or default_dispatcher

    async def submit_buzz(self, code: str, name: str, epoch: int) -> BuzzOutcome:
        """
        提交一次 buzz

        檢查順序（全部在房間鎖內）：
        1. 玩家必須仍是成員（斷線後才到的 buzz 會在這裡被擋）
        2. epoch 必須等於目前回合（跨越重置的 buzz 會在這裡被擋）
        3. ROUND_WON：本回合已有贏家 -> won=False
        4. LOBBY：遊戲尚未開始 -> PhaseInvalid
        5. ACTIVE：這個呼叫就是贏家，轉為 ROUND_WON 並廣播 first_buzz

        參數：
            code: 房間代碼
            name: 發出 buzz 的玩家（由 Gateway 綁定在連線上）
            epoch: buzz 所屬的回合編號

        返回：
            BuzzOutcome

        異常：
            RoomNotFound: 房間不存在
            UnknownMember: 玩家不在房間內
            StaleRound: epoch 不是目前回合
            PhaseInvalid: 房間仍在 LOBBY
        """
        room = self.registry.get(code)

        async with room_lock(room):
            if room.evicted:
                raise RoomNotFound(room.code)

            if name not in room.members:
                raise UnknownMember(name)

            if epoch != room.round_epoch:
                raise StaleRound(epoch, room.round_epoch)

            if room.phase == RoomPhase.ROUND_WON:
                logger.debug(
                    f"Buzz from {name} in room {room.code} lost to {room.current_winner} "
                    f"(round {epoch})"
                )
                return BuzzOutcome(won=False, winner=room.current_winner, round_epoch=epoch)

            if room.phase != RoomPhase.ACTIVE:
                raise PhaseInvalid(
                    f"Cannot buzz in room {room.code} while in {room.phase.value}"
                )

            RoomStateMachine.transition(room, RoomPhase.ROUND_WON, winner=name)
            self.dispatcher.publish(room, EventType.FIRST_BUZZ, {"player": name})
            logger.info(f"Player {name} buzzed first in room {room.code} (round {epoch})")

            return BuzzOutcome(won=True, winner=name, round_epoch=epoch)


arbitration_engine = ArbitrationEngine()
