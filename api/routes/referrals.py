"""
推荐API路由 - FastAPI表现层
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from api.dependencies import get_referral_tracker
from api.middleware.request_id import resolve_client_ip
from application.dtos.referrals import (
    ClickInfo,
    CreateReferralLinkRequest,
    ReferralLinkDTO,
    ReferralStatsDTO,
    TrackClickRequest,
    TrackingResult,
)
from application.services.referral_tracker import ReferralTracker
from core.response import Response as ApiResponse, success_response


router = APIRouter(prefix="/referrals", tags=["Referrals"])


@router.post(
    "/links",
    summary="创建推荐链接",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[ReferralLinkDTO],
)
async def create_referral_link(
    payload: CreateReferralLinkRequest,
    tracker: ReferralTracker = Depends(get_referral_tracker),
):
    """
    创建推荐链接

    - **product_id / shop_id**: 至少提供一个
    - **reward_type**: percentage（百分比，最大100）或 fixed（最小货币单位）
    """
    link = await tracker.create_referral_link(payload)
    return success_response(data=link, message="Referral link created")


@router.get("/links/{referral_code}/stats", summary="推荐统计", response_model=ApiResponse[ReferralStatsDTO])
async def get_referral_stats(
    referral_code: str,
    tracker: ReferralTracker = Depends(get_referral_tracker),
):
    stats = await tracker.get_referral_stats(referral_code)
    return success_response(data=stats)


@router.post("/track/click", summary="记录推荐点击", response_model=ApiResponse[TrackingResult])
async def track_click(
    payload: TrackClickRequest,
    request: Request,
    tracker: ReferralTracker = Depends(get_referral_tracker),
):
    """
    记录一次推荐点击并签发追踪 cookie

    IP 经可信代理时取自 CF-Connecting-IP / X-Forwarded-For / X-Real-IP，否则为连接地址；
    国家与城市取自 CF-IPCountry / CF-IPCity。被风控拦截时返回 403。
    """
    click = ClickInfo(
        ip_address=resolve_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        referrer_url=payload.referrer_url or request.headers.get("Referer"),
        landing_page=payload.landing_page,
        country=request.headers.get("CF-IPCountry"),
        city=request.headers.get("CF-IPCity"),
    )
    result = await tracker.create_tracking_cookie(payload.referral_code, click)
    if result.blocked:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={
                "blocked": True,
                "reason": result.reason,
                "risk_score": result.fraud_analysis.risk_score if result.fraud_analysis else None,
            },
        )
    return success_response(data=result, message="Click tracked")
