"""
Order and trade tables.

These tables are owned by the trading service; only the columns needed by
compliance reporting are mapped here.
"""

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base, CreatedAtMixin


class Order(Base, CreatedAtMixin):
    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    product: Mapped[str] = mapped_column(String(64), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Numeric(20, 6), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")


class Trade(Base, CreatedAtMixin):
    __tablename__ = "trades"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    order_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=True, index=True
    )
    buyer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    product: Mapped[str] = mapped_column(String(64), nullable=False)
    execution_price: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    execution_quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
