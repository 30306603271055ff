"""Referral maintenance tasks"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from celery import shared_task

from ..utils.base_task import BaseTask
from core.logging_config import get_logger

logger = get_logger(__name__)


async def _cleanup_expired_tracking() -> int:
    from infrastructure.database import engine
    from infrastructure.unit_of_work import sqlalchemy_uow_factory

    try:
        async with sqlalchemy_uow_factory() as uow:
            return await uow.tracking_repository.delete_expired(datetime.now(timezone.utc))
    finally:
        await engine.dispose()


@shared_task(bind=True, base=BaseTask, name="referrals.cleanup_expired_tracking")
def cleanup_expired_tracking(self) -> int:
    """删除已过期且未转化的推荐追踪记录"""
    deleted = asyncio.run(_cleanup_expired_tracking())
    logger.info("referral_tracking_cleaned", deleted=deleted)
    return deleted
