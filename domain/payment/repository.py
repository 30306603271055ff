"""
支付仓储接口 - 定义支付数据访问的抽象接口

状态与金额的变更全部以"条件更新"表达（单条 UPDATE ... WHERE），
由实现保证原子性，应用层不做读-改-写。
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from .entity import PaymentIntent, PaymentStatus, Refund, RefundStatus, WebhookEventRecord


class PaymentIntentRepository(ABC):
    """支付意图仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def add(self, intent: PaymentIntent) -> PaymentIntent:
        """创建支付意图；幂等键冲突时抛出 PaymentAlreadyExistsException"""
        pass

    @abstractmethod
    async def get_by_id(self, intent_id: str) -> Optional[PaymentIntent]:
        """根据ID获取支付意图"""
        pass

    @abstractmethod
    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PaymentIntent]:
        """根据幂等键获取支付意图"""
        pass

    @abstractmethod
    async def get_by_provider_payment_id(self, provider: str, provider_payment_id: str) -> Optional[PaymentIntent]:
        """根据支付渠道的支付ID获取支付意图"""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        intent_id: str,
        expected: PaymentStatus,
        new_status: PaymentStatus,
        *,
        failure_reason: Optional[str] = None,
        succeeded_at: Optional[datetime] = None,
    ) -> bool:
        """仅当当前状态等于 expected 时更新状态，返回是否更新成功"""
        pass

    @abstractmethod
    async def reserve_refund(self, intent_id: str, amount: int) -> Optional[PaymentIntent]:
        """
        原子预占退款金额

        仅当状态可退款且 refunded_amount + amount <= amount 时成功，
        同时把状态推进为 refunded / partially_refunded。失败返回 None。
        """
        pass

    @abstractmethod
    async def release_refund(self, intent_id: str, amount: int) -> Optional[PaymentIntent]:
        """退款失败时回滚预占金额并重算状态"""
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def add(self, refund: Refund) -> Refund:
        """创建退款记录"""
        pass

    @abstractmethod
    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        """根据ID获取退款"""
        pass

    @abstractmethod
    async def get_by_provider_refund_id(self, provider: str, provider_refund_id: str) -> Optional[Refund]:
        """根据渠道退款ID获取退款"""
        pass

    @abstractmethod
    async def list_by_payment(self, payment_intent_id: str) -> List[Refund]:
        """获取支付的退款列表"""
        pass

    @abstractmethod
    async def attach_provider_refund(self, refund_id: str, provider_refund_id: str) -> None:
        """记录渠道退款ID"""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        refund_id: str,
        expected: Iterable[RefundStatus],
        new_status: RefundStatus,
        *,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """仅当当前状态属于 expected 时更新状态"""
        pass


class WebhookEventRepository(ABC):
    """Webhook 接收记录仓储，只追加不修改"""

    @abstractmethod
    async def add(self, record: WebhookEventRecord) -> None:
        pass

    @abstractmethod
    async def list_recent(self, *, provider: Optional[str] = None, limit: int = 100) -> List[WebhookEventRecord]:
        """按接收时间倒序返回记录"""
        pass
