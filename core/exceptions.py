"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

每個異常都帶有穩定的 code 字串，Gateway 會原樣放進 error 事件，
前端可以依 code 判斷，不用解析 message。
"""


class BuzzerGameException(Exception):
    """所有遊戲異常的基類"""
    code = "game_error"


# ============ Room 相關異常 ============

class RoomNotFound(BuzzerGameException):
    """房間不存在"""
    code = "room_not_found"

    def __init__(self, room_code):
        self.room_code = room_code
        super().__init__(f"Room {room_code} not found")


class InvalidRoomCode(BuzzerGameException):
    """房間代碼格式錯誤（必須是 1-6 個英數字）"""
    code = "invalid_room_code"


class RoomCapacityExceeded(BuzzerGameException):
    """
    房間數量已達上限

    這是系統層級的資源耗盡，需要通知維運，不是玩家輸入錯誤
    """
    code = "server_busy"


# ============ Member 相關異常 ============

class NameTaken(BuzzerGameException):
    """房間內已有相同名稱的玩家（大小寫敏感）"""
    code = "name_taken"

    def __init__(self, name):
        self.name = name
        super().__init__(f"Name '{name}' is already taken in this room")


class InvalidPlayerName(BuzzerGameException):
    """玩家名稱為空或過長"""
    code = "invalid_player_name"


class UnknownMember(BuzzerGameException):
    """發出請求的玩家目前不在房間內"""
    code = "unknown_member"

    def __init__(self, name):
        self.name = name
        super().__init__(f"Player '{name}' is not a member of this room")


class AlreadyJoined(BuzzerGameException):
    """同一條連線已經加入某個房間"""
    code = "already_joined"


# ============ 狀態轉換異常 ============

class InvalidStateTransition(BuzzerGameException):
    """非法的狀態轉換"""
    code = "invalid_transition"


class PhaseInvalid(InvalidStateTransition):
    """目前的房間階段不允許這個操作"""
    code = "phase_invalid"


class StaleRound(BuzzerGameException):
    """buzz 屬於已經結束或被重置的回合"""
    code = "stale_round"

    def __init__(self, epoch, current_epoch):
        self.epoch = epoch
        self.current_epoch = current_epoch
        super().__init__(
            f"Buzz for round {epoch} is stale (current round is {current_epoch})"
        )
