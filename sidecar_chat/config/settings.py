"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
所有字段名与环境变量名一一对应（不区分大小写），例如 LLM_ENDPOINT、
LLM_MAX_RETRIES、MAX_CONVERSATION_LENGTH。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("SIDECAR_CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Sidecar 推理端点 ----
    llm_endpoint: str = Field(
        default="http://127.0.0.1:11434",
        description="Sidecar 推理服务基础 URL（用 127.0.0.1 避免 IPv6 解析问题）",
    )
    llm_model: str = Field(default="phi4", description="默认模型 ID")
    llm_timeout: float = Field(default=30.0, ge=1.0, description="单次尝试超时时间（秒）")
    llm_max_retries: int = Field(default=3, ge=1, le=10, description="最大尝试次数")
    backoff_base_seconds: float = Field(default=1.0, ge=0.0, description="指数退避基数（秒）")
    backoff_max_seconds: float = Field(default=5.0, ge=0.0, description="退避上限（秒）")
    backoff_jitter: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="退避抖动比例，0 表示固定退避",
    )
    health_timeout: float = Field(default=5.0, gt=0.0, le=5.0, description="健康检查超时（秒）")
    pull_timeout: float = Field(default=300.0, ge=1.0, description="拉取模型超时（秒）")
    max_connections: int = Field(default=20, ge=1, description="到 Sidecar 的最大连接数")

    # ---- 会话 ----
    max_conversation_length: int = Field(default=20, ge=1, description="单个会话最多保存的消息数")
    max_history_messages: int = Field(default=10, ge=0, description="每次发给模型的历史消息窗口")
    conversation_ttl_hours: float = Field(default=24.0, gt=0.0, description="会话保留时长（小时）")
    sweep_interval_seconds: float = Field(
        default=300.0,
        description="后台清理周期（秒），<=0 表示不启动后台线程",
    )
    sweep_on_send: bool = Field(default=True, description="每次发送后顺带清理过期会话")
    list_limit: int = Field(default=20, ge=1, le=500, description="会话列表默认条数")

    # ---- 采样默认值 ----
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_max_tokens: int = Field(default=1000, ge=1)
    system_prompt: Optional[str] = Field(default=None, description="覆盖内置的系统提示词")

    # ---- HTTP ----
    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:3001"],
        description="允许跨域访问的来源，空列表表示不启用 CORS",
    )
    cors_allow_credentials: bool = Field(default=True, description="跨域请求是否允许携带凭证")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("llm_endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"LLM_ENDPOINT must be an http(s) URL, got {v!r}")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v!r}")
        return level

    @property
    def conversation_ttl_seconds(self) -> float:
        return self.conversation_ttl_hours * 3600.0

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
