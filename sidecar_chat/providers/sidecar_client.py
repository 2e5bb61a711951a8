"""Sidecar 推理服务适配器。

Sidecar 是与应用同机部署的 Ollama / llama.cpp 兼容进程：
- 健康检查: GET  {base_url}/api/tags
- 对话补全: POST {base_url}/v1/chat/completions（OpenAI 兼容）
- 拉取模型: POST {base_url}/api/pull

本模块负责：

1. 将 InferenceRequest 转换为 Sidecar 的请求 JSON。
2. 按 BackoffPolicy 对连接失败、超时、5xx 进行重试；4xx 立即失败。
3. 将响应解析为统一的 InferenceResult，传输层异常不会越过本模块。
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
from uuid import uuid4

import httpx

from sidecar_chat.config.settings import settings
from sidecar_chat.domain.exceptions import (
    ConfigurationError,
    InvalidRequestError,
    SidecarUnavailableError,
)
from sidecar_chat.domain.models import (
    EMPTY_RESPONSE_NOTICE,
    InferenceRequest,
    InferenceResult,
    InferenceUsage,
    SidecarHealth,
)
from sidecar_chat.infrastructure.logging.logger import log_event
from sidecar_chat.providers.retry import BackoffPolicy, Sleeper

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
TAGS_PATH = "/api/tags"
PULL_PATH = "/api/pull"


def _validate_base_url(raw: str) -> str:
    parsed = urlparse(raw or "")
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(f"Invalid sidecar base URL: {raw!r}")
    return raw.rstrip("/")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _token_count(*candidates: Any) -> int:
    """取第一个可识别的非负整数计数，都不可用时返回 0。"""
    for value in candidates:
        if isinstance(value, bool):
            continue
        try:
            count = int(value)
        except (TypeError, ValueError):
            continue
        if count > 0:
            return count
    return 0


class SidecarClient:
    """Sidecar 推理客户端实现。

    - name: 客户端名称（供日志使用）。
    - health_check / list_models / is_model_available / pull_model: 模型管理。
    - complete: 带重试的对话补全，返回 InferenceResult。

    内部持有一个长连接的 httpx.Client，连接数受 max_connections 限制；
    连接池耗尽表现为 httpx.PoolTimeout，按瞬时错误重试。
    """

    name = "sidecar"

    def __init__(
        self,
        cfg=settings,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        sleeper: Sleeper = time.sleep,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self._settings = cfg
        self._base_url = _validate_base_url(cfg.llm_endpoint)
        self._transport = transport
        self._sleep = sleeper
        self._backoff = backoff or BackoffPolicy.from_settings(cfg)
        self._client: Optional[httpx.Client] = None
        self._client_lock = threading.Lock()

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    # ---- 模型管理 ----

    def health_check(self) -> SidecarHealth:
        """探测 Sidecar 是否可用；不可用时返回 healthy=False 而不是抛异常。"""

        started = time.monotonic()
        try:
            resp = self._http().get(TAGS_PATH, timeout=self._settings.health_timeout)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            latency = _elapsed_ms(started)
            log_event(
                logging.WARNING,
                "Sidecar health check failed",
                {"client": self.name},
                latency_ms=latency,
                error=str(e),
            )
            return SidecarHealth(healthy=False, latency_ms=latency, error=str(e) or type(e).__name__)
        models = [m.get("name") for m in self._models_from(data) if m.get("name")]
        return SidecarHealth(healthy=True, models=models, latency_ms=_elapsed_ms(started))

    def list_models(self) -> List[Dict[str, Any]]:
        """返回 Sidecar 上的模型列表，失败时返回空列表。"""

        try:
            resp = self._http().get(TAGS_PATH, timeout=self._settings.health_timeout)
            resp.raise_for_status()
            return self._models_from(resp.json())
        except (httpx.HTTPError, ValueError) as e:
            log_event(logging.ERROR, "Failed to get available models", {"client": self.name}, error=str(e))
            return []

    def is_model_available(self, model_name: str) -> bool:
        return any(m.get("name") == model_name for m in self.list_models())

    def pull_model(self, model_name: str) -> bool:
        """让 Sidecar 下载模型；模型较大，使用单独的长超时。"""

        log_ctx = {"client": self.name, "model": model_name}
        log_event(logging.INFO, "Pulling model", log_ctx)
        try:
            resp = self._http().post(
                PULL_PATH,
                json={"name": model_name, "stream": False},
                timeout=self._settings.pull_timeout,
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            log_event(logging.ERROR, "Failed to pull model", log_ctx, error=str(e))
            return False
        log_event(logging.INFO, "Model pulled", log_ctx)
        return True

    # ---- 对话补全 ----

    def complete(self, req: InferenceRequest) -> InferenceResult:
        """执行一次带重试的对话补全。

        步骤：
        1. 校验请求非空，否则直接抛 InvalidRequestError。
        2. 构造请求 payload。
        3. 最多尝试 llm_max_retries 次；连接失败、超时、5xx 之间按退避等待。
        4. 4xx 立即返回 invalid_request；重试耗尽返回 sidecar_unavailable。
        """

        if not req.messages or not any((m.content or "").strip() for m in req.messages):
            raise InvalidRequestError("Inference request has no messages")

        payload = self._build_payload(req)
        timeout = req.timeout or self._settings.llm_timeout
        max_attempts = max(1, int(self._settings.llm_max_retries))
        log_ctx: Dict[str, Any] = {
            "request_id": f"rq-{uuid4().hex}",
            "client": self.name,
            "model": payload["model"],
        }
        started = time.monotonic()
        last_error = ""

        for attempt in range(1, max_attempts + 1):
            attempt_started = time.monotonic()
            log_event(
                logging.INFO,
                "Sidecar request attempt",
                log_ctx,
                attempt=attempt,
                max_attempts=max_attempts,
                message_count=len(req.messages),
                temperature=payload["temperature"],
            )
            try:
                resp = self._http().post(CHAT_COMPLETIONS_PATH, json=payload, timeout=timeout)
            except httpx.TimeoutException as e:
                last_error = f"Request timed out: {e}" if str(e) else "Request timed out"
            except httpx.RequestError as e:
                # 连接被拒、DNS 失败、连接中断等
                last_error = str(e) or type(e).__name__
            else:
                if 400 <= resp.status_code < 500:
                    log_event(
                        logging.WARNING,
                        "Sidecar rejected request",
                        log_ctx,
                        attempt=attempt,
                        status_code=resp.status_code,
                        latency_ms=_elapsed_ms(attempt_started),
                        outcome="invalid_request",
                    )
                    error = InvalidRequestError(
                        f"Sidecar rejected request with HTTP {resp.status_code}: {resp.text[:200]}",
                        status_code=resp.status_code,
                    )
                    return InferenceResult(
                        outcome="invalid_request",
                        model=payload["model"],
                        attempts=attempt,
                        error=error,
                    )
                if resp.status_code >= 500:
                    last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
                else:
                    try:
                        result = self._read_completion(resp, payload["model"], attempt, started)
                    except ValueError as e:
                        last_error = str(e)
                    else:
                        log_event(
                            logging.INFO,
                            "Sidecar response received",
                            log_ctx,
                            attempt=attempt,
                            latency_ms=result.usage.latency_ms,
                            completion_tokens=result.usage.completion_tokens,
                            response_length=len(result.text),
                            outcome=result.outcome,
                        )
                        return result

            log_event(
                logging.WARNING,
                "Sidecar request attempt failed",
                log_ctx,
                attempt=attempt,
                latency_ms=_elapsed_ms(attempt_started),
                error=last_error,
                outcome="retryable_failure",
            )
            if attempt < max_attempts:
                delay = self._backoff.delay_for_attempt(attempt)
                log_event(logging.INFO, "Retrying sidecar request", log_ctx, attempt=attempt, delay_seconds=delay)
                self._sleep(delay)

        log_event(
            logging.ERROR,
            "Sidecar unavailable after retries",
            log_ctx,
            attempts=max_attempts,
            latency_ms=_elapsed_ms(started),
            error=last_error,
            outcome="sidecar_unavailable",
        )
        error = SidecarUnavailableError(
            f"Sidecar failed after {max_attempts} attempts: {last_error}",
            attempts=max_attempts,
            last_error=last_error,
        )
        return InferenceResult(
            outcome="sidecar_unavailable",
            model=payload["model"],
            attempts=max_attempts,
            error=error,
        )

    # ---- 辅助方法 ----

    def _http(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    base_url=self._base_url,
                    timeout=self._settings.llm_timeout,
                    limits=httpx.Limits(max_connections=self._settings.max_connections),
                    headers={"Content-Type": "application/json"},
                    transport=self._transport,
                    trust_env=False,
                )
            return self._client

    def _build_payload(self, req: InferenceRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": req.model or self._settings.llm_model,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "stream": False,
            "temperature": req.temperature,
            "max_tokens": req.max_tokens,
            # llama.cpp 兼容字段
            "n_predict": req.max_tokens,
            "cache_prompt": False,
        }
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        return payload

    def _read_completion(self, resp: httpx.Response, model: str, attempt: int, started: float) -> InferenceResult:
        try:
            data = resp.json()
        except ValueError:
            raise ValueError("Sidecar returned invalid JSON") from None
        try:
            return self._parse_response(data, model, attempt, started)
        except ValueError as e:
            raise ValueError(f"Sidecar returned malformed response: {e}") from None

    def _parse_response(self, data: Any, model: str, attempt: int, started: float) -> InferenceResult:
        """将 Sidecar 响应 JSON 解析为 InferenceResult。

        token 数优先取 Ollama 的 eval_count / prompt_eval_count，
        没有时回退到 OpenAI 风格的 usage 字段；无法识别的计数记为 0。

        Raises:
            ValueError: 响应体、choices 或 message 的结构不符合约定，按瞬时错误重试。
        """

        if not isinstance(data, dict):
            raise ValueError(f"expected JSON object, got {type(data).__name__}")
        choices = data.get("choices") or []
        if not isinstance(choices, list):
            raise ValueError("'choices' is not a list")
        text = ""
        if choices:
            choice = choices[0]
            if not isinstance(choice, dict):
                raise ValueError("'choices[0]' is not an object")
            msg = choice.get("message") or {}
            if not isinstance(msg, dict):
                raise ValueError("'choices[0].message' is not an object")
            text = str(msg.get("content") or "").strip()
        usage_raw = data.get("usage")
        if not isinstance(usage_raw, dict):
            usage_raw = {}
        usage = InferenceUsage(
            prompt_tokens=_token_count(data.get("prompt_eval_count"), usage_raw.get("prompt_tokens")),
            completion_tokens=_token_count(data.get("eval_count"), usage_raw.get("completion_tokens")),
            latency_ms=_elapsed_ms(started),
        )
        reported_model = data.get("model")
        if not isinstance(reported_model, str) or not reported_model:
            reported_model = model
        if not text:
            return InferenceResult(
                outcome="empty_response",
                text=EMPTY_RESPONSE_NOTICE,
                model=reported_model,
                usage=usage,
                attempts=attempt,
                raw=data,
            )
        return InferenceResult(
            outcome="success",
            text=text,
            model=reported_model,
            usage=usage,
            attempts=attempt,
            raw=data,
        )

    @staticmethod
    def _models_from(data: Any) -> List[Dict[str, Any]]:
        if not isinstance(data, dict):
            return []
        return [m for m in data.get("models") or [] if isinstance(m, dict)]
