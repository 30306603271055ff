"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
支付与推荐相关的具体异常分别位于 domain.payment.exceptions 与
domain.referral.exceptions。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    """输入或业务规则校验失败（不可重试，直接返回给调用方）"""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
        code: int = BusinessCode.PARAM_VALIDATION_ERROR,
        error_type: str = "ValidationError",
    ):
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=details,
            field=field,
        )


class ResourceNotFoundException(BusinessException):
    def __init__(self, message: str, *, code: int = BusinessCode.NOT_FOUND, error_type: str = "NotFound", details: Optional[dict] = None):
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=details,
        )
