"""汇率缓存表"""
from sqlalchemy import Column, BigInteger, Integer, String, Numeric, DateTime, Index

from .base import Base


class ExchangeRateModel(Base):
    __tablename__ = "exchange_rates"

    # SQLite 仅对 INTEGER PRIMARY KEY 自增
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    base_currency = Column(String(5), nullable=False, comment="源币种")
    quote_currency = Column(String(5), nullable=False, comment="目标币种")
    rate = Column(Numeric(precision=24, scale=12), nullable=False, comment="1 源币种 = rate 目标币种")
    fetched_at = Column(DateTime(timezone=True), nullable=False, comment="抓取时间")

    __table_args__ = (
        Index("ix_exchange_rates_pair_fetched", "base_currency", "quote_currency", "fetched_at"),
    )
