"""
Request ID 中间件
用于生成或透传追踪ID，并通过contextvars传递给日志系统
"""
import ipaddress
import uuid
from contextvars import ContextVar
from typing import Optional, Sequence

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog

from core.config import settings


# 定义context变量，用于在请求生命周期内共享request_id
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
client_ip_var: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)


def _parse_ip(value: Optional[str]):
    try:
        return ipaddress.ip_address((value or "").strip())
    except ValueError:
        return None


def _is_trusted(ip, trusted: Sequence[str]) -> bool:
    for entry in trusted:
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def resolve_client_ip(request: Request, trusted_proxies: Optional[Sequence[str]] = None) -> Optional[str]:
    """
    获取客户端真实IP

    只有直连地址属于可信代理（TRUSTED_PROXIES）时才采信转发头，否则直接使用连接地址。
    采信时优先级：CF-Connecting-IP > X-Forwarded-For 中从右往左第一个非可信代理地址 > X-Real-IP。
    """
    trusted = settings.TRUSTED_PROXIES if trusted_proxies is None else trusted_proxies
    peer = request.client.host if request.client else None
    peer_ip = _parse_ip(peer)
    if peer_ip is None or not _is_trusted(peer_ip, trusted):
        return peer

    cf_ip = _parse_ip(request.headers.get("CF-Connecting-IP"))
    if cf_ip is not None:
        return str(cf_ip)
    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        # 左侧条目可由客户端伪造，从右侧（离本服务最近的代理）开始找
        for hop in reversed(x_forwarded_for.split(",")):
            hop_ip = _parse_ip(hop)
            if hop_ip is None:
                break
            if not _is_trusted(hop_ip, trusted):
                return str(hop_ip)
    real_ip = _parse_ip(request.headers.get("X-Real-IP"))
    if real_ip is not None:
        return str(real_ip)
    return peer


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    功能：
    1. 从请求头获取或生成新的request_id
    2. 将request_id存入contextvars，供日志系统使用
    3. 在响应头中返回request_id
    """

    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        # 从请求头获取request_id，如果不存在则生成新的
        request_id = request.headers.get(self.HEADER_NAME)
        if not request_id:
            request_id = str(uuid.uuid4())

        client_ip = resolve_client_ip(request) or "unknown"

        # 设置到request.state以便在应用内部访问
        request.state.request_id = request_id
        request.state.client_ip = client_ip

        # 设置contextvars，这样structlog可以自动获取
        request_id_var.set(request_id)
        client_ip_var.set(client_ip)

        # 绑定到structlog上下文
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        # 在响应头中添加request_id
        response.headers[self.HEADER_NAME] = request_id

        return response


def get_request_id() -> Optional[str]:
    """获取当前请求的request_id，不在请求上下文中时返回None"""
    return request_id_var.get()


def get_client_ip() -> Optional[str]:
    """获取当前请求的客户端IP，不在请求上下文中时返回None"""
    return client_ip_var.get()
