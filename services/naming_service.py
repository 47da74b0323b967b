"""
命名服務：Room Code 與 Player Name 的正規化與產生

純計算邏輯，不涉及狀態轉換
"""
import random
import re
import string
from typing import Optional

from config import settings
from core.exceptions import InvalidRoomCode, InvalidPlayerName

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
_ROOM_CODE_PATTERN = re.compile(r"^[A-Z0-9]+$")


def generate_room_code(length: Optional[int] = None) -> str:
    """
    生成隨機的大寫英數字房間代碼

    範例：ABC123, XYZ9QK

    注意：
    - 不檢查唯一性（由呼叫者負責）
    - 36^6 約 21 億種可能，碰撞機率極低
    """
    length = length or settings.room_code_length
    return ''.join(random.choices(ROOM_CODE_ALPHABET, k=length))


def normalize_room_code(code: str) -> str:
    """
    正規化房間代碼：去除前後空白、轉大寫

    參數：
        code: 玩家輸入的房間代碼

    返回：
        1-6 個大寫英數字

    異常：
        InvalidRoomCode: 空字串、過長或含有非英數字
    """
    if not isinstance(code, str):
        raise InvalidRoomCode("Room code must be a string")

    normalized = code.strip().upper()
    if not normalized:
        raise InvalidRoomCode("Room code is required")
    if len(normalized) > settings.room_code_length:
        raise InvalidRoomCode(
            f"Room code must be at most {settings.room_code_length} characters"
        )
    if not _ROOM_CODE_PATTERN.match(normalized):
        raise InvalidRoomCode("Room code may only contain letters and digits")
    return normalized


def normalize_player_name(name: str) -> str:
    """
    正規化玩家名稱：只去除前後空白，大小寫保留

    名稱比對是大小寫敏感的（Alice 與 alice 是兩位不同的玩家）

    異常：
        InvalidPlayerName: 空字串或超過長度上限
    """
    if not isinstance(name, str):
        raise InvalidPlayerName("Player name must be a string")

    normalized = name.strip()
    if not normalized:
        raise InvalidPlayerName("Player name is required")
    if len(normalized) > settings.max_player_name_length:
        raise InvalidPlayerName(
            f"Player name must be at most {settings.max_player_name_length} characters"
        )
    return normalized
