"""
Room API Endpoints（Host 使用）

職責：
1. 產生新的房間代碼
2. 查詢房間狀態
3. 開始回合 / 重置回合

玩家的加入、離開、搶答都走 WebSocket（api/gateway.py），
這裡只處理 Host 觸發的外部事件。
"""
from fastapi import APIRouter, HTTPException
import logging

from schemas import RoomCodeResponse, RoomStateResponse
from core.room_manager import room_manager
from core.room_registry import registry
from core.exceptions import (
    InvalidRoomCode,
    InvalidStateTransition,
    RoomNotFound,
)

router = APIRouter(prefix="/api/rooms", tags=["rooms"])
logger = logging.getLogger(__name__)


@router.post("", response_model=RoomCodeResponse)
async def create_room_code():
    """
    產生一個目前沒人使用的房間代碼（Host endpoint）

    房間本身在第一位玩家加入時才建立
    """
    code = registry.suggest_code()
    logger.info(f"Suggested room code {code}")
    return RoomCodeResponse(code=code)


@router.get("/{code}", response_model=RoomStateResponse)
async def get_room_state(code: str):
    """
    取得房間狀態

    返回：
        - code: 房間代碼
        - phase: lobby / active / round_won
        - players: 依加入順序排列的玩家名單
        - winner: 本回合贏家（沒有則為 null）
        - round_epoch: 目前回合編號
    """
    try:
        state = await room_manager.get_state(code)
        return RoomStateResponse(**state)

    except InvalidRoomCode as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except Exception as e:
        logger.error(f"Failed to get room state: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{code}/start", response_model=RoomStateResponse)
async def start_round(code: str):
    """
    開始回合（Host endpoint）

    前置條件：
    - 房間必須存在（至少有一位玩家加入過）

    效果：
    - LOBBY / ROUND_WON -> ACTIVE，廣播 game_started
    - 已經是 ACTIVE 時不做任何事（冪等）
    """
    try:
        state = await room_manager.start_round(code)
        return RoomStateResponse(**state)

    except InvalidRoomCode as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except Exception as e:
        logger.error(f"Failed to start round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{code}/reset", response_model=RoomStateResponse)
async def reset_round(code: str):
    """
    重置回合（Host endpoint）

    效果：
    - ROUND_WON -> ACTIVE，廣播 round_reset，舊回合的 buzz 全部失效
    - 已經是 ACTIVE 時不做任何事
    - LOBBY 時回傳 409（遊戲尚未開始）
    """
    try:
        state = await room_manager.reset_round(code)
        return RoomStateResponse(**state)

    except InvalidRoomCode as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except InvalidStateTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to reset round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
