"""
並發控制工具

提供 Room-level 的鎖定機制，防止競態條件（Race Condition）

每個 Room 持有自己的 asyncio.Lock，作為該房間唯一的序列化點：
- 同一個房間的「先讀再寫」操作（join 檢查名稱、仲裁、階段轉換）互斥
- 不同房間的操作互不阻塞，沒有跨房間的全域鎖
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from models import Room


@asynccontextmanager
async def room_lock(room: Room) -> AsyncIterator[Room]:
    """
    鎖定一個 Room

    使用場景：
    - 修改 Room 狀態時
    - 需要確保檢查與修改之間不被其他請求插入

    範例：
        async with room_lock(room):
            if name in room.members:
                raise NameTaken(name)
            room.members[name] = member

    參數：
        room: 要鎖定的 Room

    返回：
        同一個 Room（方便 `async with room_lock(room) as r:` 寫法）

    注意：
        - 鎖內只能做記憶體操作，不能 await 網路 I/O
        - 事件投遞只會放進連線佇列，真正的傳送在鎖外進行
    """
    async with room.lock:
        yield room


def assert_locked(room: Room) -> None:
    """
    確認呼叫者持有房間鎖

    給只能在鎖內呼叫的 helper 使用，寫錯時立刻爆出來
    """
    if not room.lock.locked():
        raise RuntimeError(f"Room {room.code} must be locked by the caller")
