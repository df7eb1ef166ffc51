"""Payload schemas for each queued transaction type.

Terminals send camelCase JSON (``lineItems``, ``productId``); both spellings
are accepted.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from branchsync.models.sale import DiscountType
from branchsync.models.sync_ledger import SyncOperation


class PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SaleLineItemPayload(PayloadModel):
    product_id: int
    quantity: Decimal = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)
    discount_type: DiscountType = DiscountType.NONE
    discount_value: Decimal = Field(default=Decimal("0"), ge=0)


class SalePayload(PayloadModel):
    transaction_id: Optional[str] = Field(default=None, max_length=64)
    line_items: List[SaleLineItemPayload] = Field(..., min_length=1)
    payment_method: str = "cash"
    payment_reference: Optional[str] = None
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)  # Percent
    notes: Optional[str] = None


class PurchaseLineItemPayload(PayloadModel):
    product_id: int
    quantity: Decimal = Field(..., gt=0)
    unit_cost: Decimal = Field(..., ge=0)


class PurchasePayload(PayloadModel):
    reference: Optional[str] = Field(default=None, max_length=64)
    supplier_name: Optional[str] = None
    line_items: List[PurchaseLineItemPayload] = Field(..., min_length=1)
    notes: Optional[str] = None


class ExpensePayload(PayloadModel):
    reference: Optional[str] = Field(default=None, max_length=64)
    operation: SyncOperation = SyncOperation.CREATE
    category: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)
    expense_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def check_operation_fields(self) -> "ExpensePayload":
        if self.operation is SyncOperation.CREATE:
            if not self.category or self.amount is None:
                raise ValueError("category and amount are required to create an expense")
        elif not self.reference:
            raise ValueError(f"reference is required to {self.operation.value} an expense")
        return self


class InventoryAdjustPayload(PayloadModel):
    """Either a signed delta (``quantityChange``) or an absolute count (``newQuantity``)."""

    product_id: int
    quantity_change: Optional[Decimal] = None
    new_quantity: Optional[Decimal] = None
    reason: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_exactly_one(self) -> "InventoryAdjustPayload":
        if (self.quantity_change is None) == (self.new_quantity is None):
            raise ValueError("exactly one of quantityChange or newQuantity is required")
        return self
