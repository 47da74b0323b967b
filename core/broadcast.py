"""
Broadcast Dispatcher：把狀態變更通知送到房間內每一位玩家

設計：
- publish() 在房間鎖內被呼叫，但只把事件放進各連線的佇列（非阻塞）
  -> 同一房間的所有玩家都以相同順序收到事件
- 真正的網路傳送在各連線自己的 sender task 裡，不會佔住房間鎖
- 單一連線投遞失敗只記錄 log，不重試、不回滾已完成的狀態轉換
"""
import logging
from typing import Any, Dict, Optional

from models import ConnectionHandle, EventType, OutboundEvent, Room

logger = logging.getLogger(__name__)


class BroadcastDispatcher:
    """房間事件的扇出器"""

    def publish(
        self,
        room: Room,
        event: EventType,
        data: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        把事件投遞給房間內所有玩家

        參數：
            room: 目標房間（呼叫者應持有房間鎖）
            event: 事件名稱
            data: 事件內容

        返回：
            成功投遞的連線數量
        """
        outbound = OutboundEvent(event=event, data=data or {}, round_epoch=room.round_epoch)
        delivered = 0

        for member in list(room.members.values()):
            if self._deliver(member.connection, outbound, room_code=room.code, player=member.name):
                delivered += 1

        logger.debug(
            f"Published {event.value} to {delivered}/{len(room.members)} members "
            f"in room {room.code}"
        )
        return delivered

    def send_to(
        self,
        connection: ConnectionHandle,
        event: EventType,
        data: Optional[Dict[str, Any]] = None,
        round_epoch: Optional[int] = None
    ) -> bool:
        """只送給一條連線（例如 error、buzz_result）"""
        outbound = OutboundEvent(event=event, data=data or {}, round_epoch=round_epoch)
        return self._deliver(connection, outbound)

    @staticmethod
    def _deliver(
        connection: ConnectionHandle,
        outbound: OutboundEvent,
        room_code: Optional[str] = None,
        player: Optional[str] = None
    ) -> bool:
        try:
            connection.deliver(outbound)
            return True
        except Exception as e:
            logger.warning(
                f"Failed to deliver {outbound.event.value} to {player or 'connection'}"
                f"{f' in room {room_code}' if room_code else ''}: {e}"
            )
            return False


dispatcher = BroadcastDispatcher()
