
from .request_id import RequestIDMiddleware, get_request_id, get_client_ip, resolve_client_ip
from .logging import LoggingMiddleware

__all__ = [
    "RequestIDMiddleware",
    "LoggingMiddleware",
    "get_request_id",
    "get_client_ip",
    "resolve_client_ip",
]
