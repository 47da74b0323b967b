"""
Session Gateway：WebSocket 與核心層之間的邊界

URL: /ws

連線流程：
  1. accept，建立 ClientConnection 並啟動 sender task
  2. 接收 frame，依 event 分派到核心層
  3. 核心層的異常轉成單一 error frame，只回給發出請求的連線
  4. 斷線（不論正常或異常）一律在 finally 中 leave + 釋放連線

Client -> server events：
  join_room   {roomCode, playerName}
  buzz        {roomCode, epoch?}       身分以連線綁定的名稱為準
  leave_room  {}
  ping        {}
"""
import asyncio
import logging
from typing import Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from config import settings
from models import EventType
from schemas import BuzzPayload, ClientFrame, JoinRoomPayload
from core.arbitration import ArbitrationEngine, arbitration_engine
from core.broadcast import BroadcastDispatcher, dispatcher as default_dispatcher
from core.exceptions import (
    AlreadyJoined,
    BuzzerGameException,
    RoomCapacityExceeded,
    RoomNotFound,
    UnknownMember,
)
from core.room_manager import RoomManager, room_manager
from services.naming_service import normalize_room_code
from api.connection import ClientConnection

router = APIRouter(tags=["gateway"])
logger = logging.getLogger(__name__)

# 關閉連線時等待 sender 把剩餘事件送完的上限
SENDER_DRAIN_TIMEOUT = 2.0


class SessionGateway:
    """管理所有 WebSocket 連線，並把 frame 轉成核心層操作"""

    def __init__(
        self,
        manager: Optional[RoomManager] = None,
        arbitration: Optional[ArbitrationEngine] = None,
        dispatcher: Optional[BroadcastDispatcher] = None
    ):
        self.manager = manager or room_manager
        self.arbitration = arbitration or arbitration_engine
        self.dispatcher = dispatcher or default_dispatcher
        self.connections: Dict[str, ClientConnection] = {}

    async def handle(self, websocket: WebSocket) -> None:
        await websocket.accept()
        connection = ClientConnection(websocket, settings.outbound_queue_size)
        self.connections[connection.conn_id] = connection
        sender = asyncio.create_task(connection.run_sender())
        logger.info(f"Connection {connection.conn_id} opened")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                raw = message.get("text")
                if raw is None:
                    # 只接受 JSON text frame；binary frame 視同無效內容，不斷線
                    self._send_error(connection, "Invalid message payload", "invalid_payload")
                    continue
                await self.dispatch(connection, raw)
        except WebSocketDisconnect:
            logger.info(f"Connection {connection.conn_id} disconnected")
        except Exception as e:
            logger.error(f"Connection {connection.conn_id} failed: {e}", exc_info=True)
        finally:
            await self.release(connection, sender)

    async def dispatch(self, connection: ClientConnection, raw: str) -> None:
        """處理一個 inbound frame；所有玩家錯誤都轉成 error frame"""
        try:
            frame = ClientFrame.model_validate_json(raw)
            logger.debug(f"Received {frame.event} from connection {connection.conn_id}")

            if frame.event == "join_room":
                await self._handle_join(connection, JoinRoomPayload.model_validate(frame.data))
            elif frame.event == "buzz":
                await self._handle_buzz(connection, BuzzPayload.model_validate(frame.data))
            elif frame.event == "leave_room":
                await self._handle_leave(connection)
            elif frame.event == "ping":
                self.dispatcher.send_to(connection, EventType.PONG)
            else:
                self._send_error(connection, f"Unknown event '{frame.event}'", "unknown_event")

        except ValidationError as e:
            logger.debug(f"Invalid frame from connection {connection.conn_id}: {e}")
            self._send_error(connection, "Invalid message payload", "invalid_payload")
        except RoomCapacityExceeded:
            # 已在 registry 以 ERROR 記錄；玩家只看到通用訊息
            self._send_error(connection, "Server is busy, try again later", RoomCapacityExceeded.code)
        except BuzzerGameException as e:
            logger.info(f"Rejected request from connection {connection.conn_id}: {e}")
            self._send_error(connection, str(e), e.code)

    async def _handle_join(self, connection: ClientConnection, payload: JoinRoomPayload) -> None:
        if connection.joined:
            raise AlreadyJoined(
                f"Already joined room {connection.room_code} as {connection.player_name}"
            )

        room, member = await self.manager.join(payload.room_code, payload.player_name, connection)
        connection.bind(room.code, member.name)

    async def _handle_buzz(self, connection: ClientConnection, payload: BuzzPayload) -> None:
        code = normalize_room_code(payload.room_code)
        if not connection.joined or code != connection.room_code:
            raise UnknownMember(connection.player_name or "anonymous")

        epoch = payload.epoch
        if epoch is None:
            epoch = connection.last_epoch if connection.last_epoch is not None else 0

        outcome = await self.arbitration.submit_buzz(code, connection.player_name, epoch)
        self.dispatcher.send_to(
            connection,
            EventType.BUZZ_RESULT,
            {"won": outcome.won, "player": outcome.winner},
            round_epoch=outcome.round_epoch
        )

    async def _handle_leave(self, connection: ClientConnection) -> None:
        if not connection.joined:
            return
        code, name = connection.room_code, connection.player_name
        connection.unbind()
        await self.manager.leave(code, name, connection)

    def _send_error(self, connection: ClientConnection, message: str, code: str) -> None:
        self.dispatcher.send_to(connection, EventType.ERROR, {"message": message, "code": code})

    async def release(self, connection: ClientConnection, sender: asyncio.Task) -> None:
        """
        釋放連線（每一條離開路徑都會走到這裡）

        1. 如果還在房間內，leave（冪等）
        2. 停止接受事件，等待 sender 送完或逾時取消
        """
        self.connections.pop(connection.conn_id, None)

        if connection.joined:
            code, name = connection.room_code, connection.player_name
            connection.unbind()
            try:
                await self.manager.leave(code, name, connection)
            except RoomNotFound:
                logger.debug(f"Room {code} already gone while releasing {connection.conn_id}")
            except Exception as e:
                logger.error(
                    f"Failed to remove {name} from room {code} on disconnect: {e}",
                    exc_info=True
                )

        connection.close()
        try:
            await asyncio.wait_for(sender, timeout=SENDER_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Sender for connection {connection.conn_id} did not drain, cancelled")
        except Exception as e:
            logger.debug(f"Sender for connection {connection.conn_id} ended with {e}")

        logger.info(f"Connection {connection.conn_id} released")

    async def close_all(self) -> None:
        """關閉服務時主動關掉所有連線"""
        for connection in list(self.connections.values()):
            try:
                await connection.websocket.close(code=1001)
            except Exception as e:
                logger.debug(f"Error closing connection {connection.conn_id}: {e}")


gateway = SessionGateway()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await gateway.handle(websocket)
