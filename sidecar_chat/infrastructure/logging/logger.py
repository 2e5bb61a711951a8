import json
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from sidecar_chat.config.settings import settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _open_handler() -> logging.Handler:
    log_dir = Path(settings.log_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_dir / "sidecar_chat.log", encoding="utf-8")
    except OSError:
        # 日志目录不可写时退回系统临时目录
        fallback = Path(tempfile.gettempdir()) / "sidecar_chat.log"
        return logging.FileHandler(fallback, encoding="utf-8")


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("sidecar_chat")
    logger.setLevel(settings.log_level)
    if logger.handlers:
        return logger
    fh = _open_handler()
    fh.setLevel(settings.log_level)
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


def log_event(level: int, message: str, log_ctx: dict, **fields) -> None:
    """以结构化字段记录一条事件，字段会合并进 JSON 输出。"""
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})


logger = setup_logger()
