"""
外部数据源 HTTP 客户端基类

汇率源与 IP 信誉服务共用：
- 超时、网络错误、429/5xx 自动重试（tenacity 指数退避）
- 其余错误统一抛出 APIError，由调用方决定降级策略
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger

logger = get_logger(__name__)


RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Retry-After 上限，避免数据源返回过大的等待时间阻塞支付请求
MAX_RETRY_AFTER_SECONDS = 5.0


@dataclass
class APIResponse:
    status_code: int
    data: Any
    request_id: Optional[str] = None

    def json(self) -> Any:
        return self.data


class APIError(Exception):
    """外部数据源调用失败（重试耗尽或不可重试）"""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)

    def __str__(self):
        if self.status_code:
            return f"{self.message} | Status: {self.status_code}"
        return self.message


class _TransientStatus(APIError):
    pass


class BaseAPIClient:
    """
    只读 JSON 数据源客户端

    子类通过 ``get`` 访问相对路径，响应体须为 JSON。
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._headers = {"Accept": "application/json", "User-Agent": "marketplace-payments/1.0"}
        if headers:
            self._headers.update(headers)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers=self._headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send_once(self, endpoint: str, params: Optional[Dict[str, Any]]) -> APIResponse:
        response = await self._client.get(endpoint.lstrip("/"), params=params)
        request_id = response.headers.get("x-request-id")

        if response.status_code in RETRY_STATUS_CODES:
            retry_after = response.headers.get("retry-after")
            if response.status_code == 429 and retry_after:
                try:
                    await asyncio.sleep(min(float(retry_after), MAX_RETRY_AFTER_SECONDS))
                except ValueError:
                    pass
            raise _TransientStatus(
                f"Transient error from {self.base_url}", status_code=response.status_code, retryable=True
            )
        if response.is_error:
            raise APIError(f"Request to {self.base_url} rejected", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise APIError("Response is not JSON", status_code=response.status_code) from exc
        return APIResponse(status_code=response.status_code, data=data, request_id=request_id)

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> APIResponse:
        """
        GET 请求

        Raises:
            APIError: 重试耗尽或不可重试的错误
        """
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, min=self.retry_delay, max=self.retry_delay * 8),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, _TransientStatus)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send_once(endpoint, params)
        except _TransientStatus as exc:
            raise APIError(exc.message, status_code=exc.status_code, retryable=True) from exc
        except httpx.TimeoutException as exc:
            raise APIError(f"Request timeout after {self.timeout}s", retryable=True) from exc
        except httpx.HTTPError as exc:
            logger.warning("api_request_failed", base_url=self.base_url, endpoint=endpoint, error=str(exc))
            raise APIError(f"Network error: {exc}", retryable=True) from exc
