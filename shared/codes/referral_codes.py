"""
Referral and fraud specific codes.
"""
from __future__ import annotations

from enum import IntEnum


class ReferralCode(IntEnum):
    REFERRAL_NOT_FOUND = 70000
    CLICK_BLOCKED = 70001
    ATTRIBUTION_MISS = 70002
    REFERRAL_CODE_CONFLICT = 70003
