"""推荐相关业务异常"""
from __future__ import annotations

from domain.common.exceptions import BusinessException, ResourceNotFoundException
from shared.codes.referral_codes import ReferralCode


class ReferralNotFoundException(ResourceNotFoundException):
    """推荐码不存在、已停用或已过期"""

    def __init__(self, referral_code: str):
        super().__init__(
            f"Referral link not found or inactive: {referral_code}",
            code=ReferralCode.REFERRAL_NOT_FOUND,
            error_type="ReferralNotFound",
            details={"referral_code": referral_code},
        )


class AttributionMiss(BusinessException):
    """购买无法归因到追踪记录（调用方记录日志后继续）"""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_ATTRIBUTED = "already_attributed"

    def __init__(self, reason: str, *, cookie_value: str | None = None):
        self.reason = reason
        super().__init__(
            code=ReferralCode.ATTRIBUTION_MISS,
            message=f"Purchase not attributed: {reason}",
            error_type="AttributionMiss",
            # cookie value is a bearer secret; keep only a prefix
            details={"reason": reason, "cookie_prefix": (cookie_value or "")[:8] or None},
        )


class ReferralCodeConflictException(BusinessException):
    def __init__(self, referral_code: str):
        super().__init__(
            code=ReferralCode.REFERRAL_CODE_CONFLICT,
            message="Referral code already exists",
            error_type="ReferralCodeConflict",
            details={"referral_code": referral_code},
        )
