"""
日誌設定

整個服務共用同一套 logging 設定：
- 在 main.py 啟動時呼叫一次 setup_logging()
- 其他模組一律使用 logging.getLogger(__name__)
"""
import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    設定 root logger

    參數：
        log_level: 日誌等級（DEBUG/INFO/WARNING/ERROR）
        log_file: 額外輸出到檔案（可選）

    注意：
        - 重複呼叫會先移除舊的 handler，避免同一行被印兩次
        - uvicorn 的 access log 維持 WARNING，避免淹沒遊戲事件
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
