"""Stock movement model: the ledger of every stock change."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from branchsync.db.base import Base


class MovementReason(str, Enum):
    """Reasons for stock movements."""

    SALE = "sale"  # From POS sale
    PURCHASE = "purchase"  # Goods received
    ADJUSTMENT = "adjustment"  # Manual delta adjustment
    COUNT = "count"  # Absolute count replaced the stock level


class StockMovement(Base):
    """Ledger of all stock changes (single source of truth)."""

    __tablename__ = "stock_movements"

    id: Mapped[int] = mapped_column(primary_key=True)
    ts: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    qty_delta: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    ref_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # sale, purchase
    ref_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sync_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Relationships
    product: Mapped["Product"] = relationship("Product", back_populates="stock_movements")


# Forward references
from branchsync.models.product import Product
