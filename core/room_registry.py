"""
Room Registry：管理所有存活中的房間

職責：
1. 依房間代碼查詢 / 建立房間（第一次有人加入時建立）
2. 房間清空後回收（可設定寬限期，吸收斷線重連）
3. 提供維運查詢（房間數量、代碼列表）

並發：
- code -> Room 的 map 是唯一跨房間共享的結構，由 registry 自己的鎖保護
- 同一個未知代碼被同時第一次加入時，只會建立一個 Room
- 鎖順序固定為「房間鎖 -> registry 鎖」，get_or_create 只拿 registry 鎖
"""
import asyncio
import logging
from typing import Dict, List, Optional

from config import settings
from models import Room, RoomPhase
from core.exceptions import RoomNotFound, RoomCapacityExceeded
from core.locks import room_lock
from services.naming_service import normalize_room_code, generate_room_code

logger = logging.getLogger(__name__)


class RoomRegistry:
    """房間代碼 -> Room 的登錄表"""

    def __init__(self, max_rooms: Optional[int] = None, grace_seconds: Optional[float] = None):
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()
        self.max_rooms = max_rooms if max_rooms is not None else settings.max_rooms
        self.grace_seconds = (
            grace_seconds if grace_seconds is not None
            else settings.room_eviction_grace_seconds
        )

    async def get_or_create(self, code: str) -> Room:
        """
        取得房間，不存在就建立一個（LOBBY、沒有成員）

        流程：
        1. 正規化代碼（去空白、轉大寫）
        2. 在 registry 鎖內查詢或建立
        3. 如果房間正在等待回收，取消回收

        參數：
            code: 房間代碼（未正規化）

        返回：
            Room object

        異常：
            InvalidRoomCode: 代碼格式錯誤
            RoomCapacityExceeded: 房間數量已達上限
        """
        normalized = normalize_room_code(code)

        async with self._lock:
            room = self._rooms.get(normalized)
            if room is not None:
                self._cancel_eviction(room)
                return room

            if len(self._rooms) >= self.max_rooms:
                logger.error(
                    f"Room capacity exhausted ({len(self._rooms)}/{self.max_rooms}), "
                    f"cannot create room {normalized}"
                )
                raise RoomCapacityExceeded(
                    f"Server cannot host more than {self.max_rooms} rooms"
                )

            room = Room(code=normalized, phase=RoomPhase.LOBBY)
            self._rooms[normalized] = room
            logger.info(f"Created room {normalized} ({len(self._rooms)} live rooms)")
            return room

    def suggest_code(self) -> str:
        """
        產生一個目前沒人使用的房間代碼（Host 開房用）

        只產生代碼，不建立房間；房間仍在第一位玩家加入時才建立，
        所以沒人加入的代碼不會佔用資源

        注意：
            - 不保留代碼，兩位 Host 極小機率會拿到同一個代碼
        """
        code = generate_room_code()
        while code in self._rooms:
            logger.warning(f"Room code collision detected, regenerating: {code}")
            code = generate_room_code()
        return code

    def get(self, code: str) -> Room:
        """
        取得既有房間

        異常：
            InvalidRoomCode: 代碼格式錯誤
            RoomNotFound: 房間不存在
        """
        normalized = normalize_room_code(code)
        room = self._rooms.get(normalized)
        if room is None:
            raise RoomNotFound(normalized)
        return room

    async def remove(self, code: str) -> bool:
        """
        刪除房間（只在房間仍然為空時）

        在房間鎖與 registry 鎖之內重新確認是否為空，
        所以呼叫者不需要事先檢查

        返回：
            True 如果房間真的被刪除
        """
        normalized = normalize_room_code(code)
        room = self._rooms.get(normalized)
        if room is None:
            return False

        async with room_lock(room):
            if room.evicted or not room.is_empty():
                return False
            async with self._lock:
                if self._rooms.get(normalized) is not room:
                    return False
                del self._rooms[normalized]
                room.evicted = True

        logger.info(f"Evicted empty room {normalized} ({len(self._rooms)} live rooms)")
        return True

    async def schedule_eviction(self, room: Room) -> None:
        """
        房間清空後安排回收

        - grace_seconds <= 0：立即刪除
        - 否則等待寬限期後再刪除；期間有人加入會在 get_or_create 取消回收
        """
        if self.grace_seconds <= 0:
            await self.remove(room.code)
            return

        async with self._lock:
            if room.evicted:
                return
            if room.eviction_task is not None and not room.eviction_task.done():
                return
            room.eviction_task = asyncio.create_task(self._evict_later(room))
            logger.debug(
                f"Room {room.code} is empty, evicting in {self.grace_seconds}s unless someone rejoins"
            )

    async def _evict_later(self, room: Room) -> None:
        await asyncio.sleep(self.grace_seconds)
        await self.remove(room.code)

    @staticmethod
    def _cancel_eviction(room: Room) -> None:
        task = room.eviction_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            logger.debug(f"Cancelled pending eviction of room {room.code}")
        room.eviction_task = None

    def room_count(self) -> int:
        return len(self._rooms)

    def list_codes(self) -> List[str]:
        return sorted(self._rooms)

    async def shutdown(self) -> None:
        """關閉服務時取消所有待回收任務並清空房間"""
        async with self._lock:
            for room in self._rooms.values():
                self._cancel_eviction(room)
            count = len(self._rooms)
            self._rooms.clear()
        logger.info(f"Registry shut down, dropped {count} rooms")


registry = RoomRegistry()
