from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # 房間容量上限：超過時視為系統資源耗盡（通知維運，不是玩家錯誤）
    max_rooms: int = 1000
    # 房間清空後保留的秒數，讓斷線重連的玩家能回到同一個房間；0 表示立即回收
    room_eviction_grace_seconds: float = 5.0
    # 每條連線的待送事件佇列長度，塞滿就視為連線已死
    outbound_queue_size: int = 64
    max_player_name_length: int = 24
    room_code_length: int = 6

    log_level: str = "INFO"
    log_file: Optional[str] = None

    cors_origins: List[str] = ["*"]
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()
