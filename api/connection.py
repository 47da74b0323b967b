"""
單一 WebSocket 連線的生命週期

- deliver()：核心層呼叫，只把事件放進佇列（非阻塞，可以在房間鎖內呼叫）
- run_sender()：背景 task，依序把佇列中的事件送出
- close()：釋放連線，保證 sender task 會結束

佇列塞滿代表前端收得太慢，直接斷線；
重新連線後的 lobby_update 會帶完整名單，不需要補送漏掉的事件。
"""
import asyncio
import logging
import uuid
from typing import Optional

from fastapi import WebSocket

from models import OutboundEvent

logger = logging.getLogger(__name__)

# 1011 = internal error；前端看到後應重新連線
CLOSE_CODE_SLOW_CONSUMER = 1011


class ConnectionClosed(Exception):
    """連線已關閉，無法再投遞事件"""
    pass


class ClientConnection:
    """Gateway 持有的連線；核心層只把它當成 ConnectionHandle"""

    def __init__(self, websocket: WebSocket, queue_size: int):
        self.websocket = websocket
        self.conn_id = str(uuid.uuid4())
        self.room_code: Optional[str] = None
        self.player_name: Optional[str] = None
        # 最後一個「已經送到前端」的事件所屬回合，buzz 沒帶 epoch 時用它
        self.last_epoch: Optional[int] = None
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._abort_task: Optional[asyncio.Task] = None

    @property
    def joined(self) -> bool:
        return self.room_code is not None

    def bind(self, room_code: str, player_name: str) -> None:
        self.room_code = room_code
        self.player_name = player_name

    def unbind(self) -> None:
        self.room_code = None
        self.player_name = None

    def deliver(self, event: OutboundEvent) -> None:
        if self.closed:
            raise ConnectionClosed(f"Connection {self.conn_id} is closed")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"Outbound queue full for connection {self.conn_id} "
                f"({self.player_name or 'anonymous'}), disconnecting"
            )
            self.closed = True
            self._abort_task = asyncio.get_running_loop().create_task(self._abort())
            raise ConnectionClosed(f"Connection {self.conn_id} is too slow")

    async def _abort(self) -> None:
        try:
            await self.websocket.close(code=CLOSE_CODE_SLOW_CONSUMER)
        except Exception as e:
            logger.debug(f"Error closing slow connection {self.conn_id}: {e}")

    async def run_sender(self) -> None:
        """依序送出佇列中的事件；None 是結束訊號"""
        while True:
            event = await self._queue.get()
            if event is None:
                break
            try:
                await self.websocket.send_json(event.to_wire())
            except Exception as e:
                logger.warning(
                    f"Failed to send {event.event.value} to connection {self.conn_id}: {e}"
                )
                self.closed = True
                break
            if event.round_epoch is not None:
                self.last_epoch = event.round_epoch
            logger.debug(f"Sent {event.event.value} to connection {self.conn_id}")

    def close(self) -> None:
        """停止接受新事件，並讓 sender task 在送完已排隊的事件後結束"""
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # 佇列已滿時 sender 由呼叫者取消
            pass
