"""
Domain Apply Step

The ledger calls a ``DomainApplier`` once it has decided a replayed
transaction must take effect. The applier is the only place that touches
business entities; the ledger treats it as a black box with the contract

    apply(db, descriptor, context) -> ApplyResult(success, retryable, error_message)

``InventoryDomainApplier`` is the reference implementation used by the
branch server: sales and purchases move stock, inventory adjustments set or
shift stock levels, expenses are created, edited and deleted.

Stock is allowed to go negative. Concurrent offline sales of the same item
are a normal business event, so the product is flagged with
``has_inventory_discrepancy`` for a manager instead of rejecting the sale.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from branchsync.core.errors import TransientApplyError, ValidationError
from branchsync.models.expense import Expense
from branchsync.models.product import Product
from branchsync.models.purchase import Purchase, PurchaseLineItem
from branchsync.models.sale import DiscountType, Sale, SaleLineItem
from branchsync.models.stock import MovementReason, StockMovement
from branchsync.models.sync_ledger import SyncOperation
from branchsync.schemas.payloads import (
    ExpensePayload,
    InventoryAdjustPayload,
    PurchasePayload,
    SalePayload,
)
from branchsync.schemas.sync import TransactionType
from branchsync.services.conflict_resolver import ConflictResolver

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass
class EntityDescriptor:
    """What a queued transaction does, in ledger terms."""

    transaction_type: str
    entity_type: str
    entity_id: str
    operation: SyncOperation
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApplyContext:
    sync_id: str
    branch_id: str
    user_id: Optional[str]
    timestamp: datetime  # Origin (client) time
    ordering_timestamp: Optional[datetime] = None  # Origin time, clamped for conflict ordering

    @property
    def effective_timestamp(self) -> datetime:
        return self.ordering_timestamp or self.timestamp


@dataclass
class ApplyResult:
    success: bool
    retryable: bool = False
    error_message: Optional[str] = None
    entity_id: Optional[str] = None

    @classmethod
    def ok(cls, entity_id: Optional[str] = None) -> "ApplyResult":
        return cls(success=True, entity_id=entity_id)

    @classmethod
    def rejected(cls, message: str) -> "ApplyResult":
        return cls(success=False, retryable=False, error_message=message)

    @classmethod
    def transient(cls, message: str) -> "ApplyResult":
        return cls(success=False, retryable=True, error_message=message)


def _format_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Invalid payload: " + "; ".join(parts)


class DomainApplier(ABC):
    """Contract between the sync ledger and the business domain."""

    @abstractmethod
    def describe(self, transaction_type: str, payload: Dict[str, Any], sync_id: str) -> EntityDescriptor:
        """Map a queued transaction onto an entity. Raises ValidationError."""

    @abstractmethod
    def _apply(self, db: Session, descriptor: EntityDescriptor, context: ApplyContext) -> Optional[str]:
        """Mutate business state and return the affected entity id.

        Raise ValidationError for rejections and TransientApplyError for
        contention. Must not commit; the ledger owns the transaction.
        """

    def apply(self, db: Session, descriptor: EntityDescriptor, context: ApplyContext) -> ApplyResult:
        try:
            entity_id = self._apply(db, descriptor, context)
            db.flush()
        except ValidationError as e:
            return ApplyResult.rejected(str(e))
        except PydanticValidationError as e:
            return ApplyResult.rejected(_format_validation_error(e))
        except TransientApplyError as e:
            return ApplyResult.transient(str(e))
        except OperationalError as e:
            logger.warning(f"Transient database error applying {context.sync_id}: {e}")
            return ApplyResult.transient(f"Database busy: {e.orig}")
        except IntegrityError as e:
            return ApplyResult.rejected(f"Integrity violation: {e.orig}")
        return ApplyResult.ok(entity_id)


class InventoryDomainApplier(DomainApplier):
    """Reference applier operating on the branch's products, sales, purchases and expenses."""

    def __init__(self, resolver: Optional[ConflictResolver] = None):
        self.resolver = resolver or ConflictResolver()

    def describe(self, transaction_type: str, payload: Dict[str, Any], sync_id: str) -> EntityDescriptor:
        try:
            kind = TransactionType(transaction_type)
        except ValueError:
            raise ValidationError(f"Unknown transaction type: {transaction_type}")

        try:
            if kind is TransactionType.SALE:
                sale = SalePayload.model_validate(payload)
                return EntityDescriptor(
                    kind.value, "sale", sale.transaction_id or sync_id, SyncOperation.CREATE, payload
                )
            if kind is TransactionType.PURCHASE:
                purchase = PurchasePayload.model_validate(payload)
                return EntityDescriptor(
                    kind.value, "purchase", purchase.reference or sync_id, SyncOperation.CREATE, payload
                )
            if kind is TransactionType.EXPENSE:
                expense = ExpensePayload.model_validate(payload)
                return EntityDescriptor(
                    kind.value, "expense", expense.reference or sync_id, expense.operation, payload
                )
            adjust = InventoryAdjustPayload.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(_format_validation_error(e))

        # A delta accumulates; an absolute count replaces the stock level
        operation = SyncOperation.CREATE if adjust.quantity_change is not None else SyncOperation.UPDATE
        return EntityDescriptor(kind.value, "product", str(adjust.product_id), operation, payload)

    def _apply(self, db: Session, descriptor: EntityDescriptor, context: ApplyContext) -> Optional[str]:
        handlers = {
            TransactionType.SALE.value: self._apply_sale,
            TransactionType.PURCHASE.value: self._apply_purchase,
            TransactionType.EXPENSE.value: self._apply_expense,
            TransactionType.INVENTORY_ADJUST.value: self._apply_inventory_adjust,
        }
        handler = handlers.get(descriptor.transaction_type)
        if handler is None:
            raise ValidationError(f"Unknown transaction type: {descriptor.transaction_type}")
        return handler(db, descriptor, context)

    # ==================== STOCK ====================

    def _lock_products(self, db: Session, product_ids: List[int]) -> Dict[int, Product]:
        """Load products under a row lock so stock arithmetic is not interleaved."""
        wanted = set(product_ids)
        rows = db.execute(
            select(Product).where(Product.id.in_(wanted)).with_for_update()
        ).scalars().all()
        products = {p.id: p for p in rows}
        missing = sorted(wanted - products.keys())
        if missing:
            raise ValidationError(f"Product(s) not found: {', '.join(str(m) for m in missing)}")
        return products

    def _move_stock(
        self,
        db: Session,
        product: Product,
        delta: Decimal,
        reason: MovementReason,
        context: ApplyContext,
        ref_type: Optional[str] = None,
        ref_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> None:
        if reason is not MovementReason.COUNT:
            counted_by = self.resolver.record_additive(
                db, "product", str(product.id), context.sync_id, context.effective_timestamp
            )
            if counted_by is not None:
                # A later count already observed this movement
                logger.info(
                    f"{reason.value} {ref_id or context.sync_id} on product {product.id} "
                    f"predates count {counted_by}; stock level unchanged"
                )
                notes = f"Included in count {counted_by}"
                delta = Decimal("0")

        product.stock_level = Decimal(product.stock_level) + delta
        db.add(StockMovement(
            product_id=product.id,
            qty_delta=delta,
            reason=reason.value,
            ref_type=ref_type,
            ref_id=ref_id,
            sync_id=context.sync_id,
            notes=notes,
        ))
        if product.stock_level < 0 and not product.has_inventory_discrepancy:
            product.has_inventory_discrepancy = True
            logger.warning(
                f"Product '{product.name}' (SKU: {product.sku}) has negative stock "
                f"{product.stock_level} after {reason.value} {ref_id or context.sync_id}"
            )

    # ==================== HANDLERS ====================

    def _apply_sale(self, db: Session, descriptor: EntityDescriptor, context: ApplyContext) -> str:
        payload = SalePayload.model_validate(descriptor.data)
        products = self._lock_products(db, [li.product_id for li in payload.line_items])

        sale = Sale(
            transaction_id=descriptor.entity_id,
            sync_id=context.sync_id,
            cashier_id=context.user_id,
            sale_date=context.timestamp,  # Client time, not server time
            payment_method=payload.payment_method,
            payment_reference=payload.payment_reference,
            notes=payload.notes,
        )

        subtotal = Decimal("0")
        total_discount = Decimal("0")
        for item in payload.line_items:
            if item.discount_type is DiscountType.PERCENTAGE:
                if item.discount_value > 100:
                    raise ValidationError("Percentage discount must be between 0 and 100")
                item_discount = item.unit_price * item.discount_value / 100
            elif item.discount_type is DiscountType.FIXED_AMOUNT:
                if item.discount_value > item.unit_price:
                    raise ValidationError("Fixed discount cannot exceed unit price")
                item_discount = item.discount_value
            else:
                item_discount = Decimal("0")

            discounted_price = item.unit_price - item_discount
            line_total = (discounted_price * item.quantity).quantize(CENTS, ROUND_HALF_UP)
            sale.line_items.append(SaleLineItem(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                discount_type=item.discount_type.value,
                discount_value=item.discount_value,
                discounted_unit_price=discounted_price.quantize(CENTS, ROUND_HALF_UP),
                line_total=line_total,
            ))
            subtotal += line_total
            total_discount += item_discount * item.quantity

            self._move_stock(
                db, products[item.product_id], -item.quantity, MovementReason.SALE, context,
                ref_type="sale", ref_id=descriptor.entity_id,
            )

        tax_amount = (subtotal * payload.tax_rate / 100).quantize(CENTS, ROUND_HALF_UP)
        sale.subtotal = subtotal
        sale.total_discount = total_discount.quantize(CENTS, ROUND_HALF_UP)
        sale.tax_amount = tax_amount
        sale.total = subtotal + tax_amount
        db.add(sale)
        return sale.transaction_id

    def _apply_purchase(self, db: Session, descriptor: EntityDescriptor, context: ApplyContext) -> str:
        payload = PurchasePayload.model_validate(descriptor.data)
        products = self._lock_products(db, [li.product_id for li in payload.line_items])

        purchase = Purchase(
            reference=descriptor.entity_id,
            sync_id=context.sync_id,
            supplier_name=payload.supplier_name,
            purchase_date=context.timestamp,
            notes=payload.notes,
        )
        total = Decimal("0")
        for item in payload.line_items:
            purchase.line_items.append(PurchaseLineItem(
                product_id=item.product_id, quantity=item.quantity, unit_cost=item.unit_cost,
            ))
            total += item.quantity * item.unit_cost
            self._move_stock(
                db, products[item.product_id], item.quantity, MovementReason.PURCHASE, context,
                ref_type="purchase", ref_id=descriptor.entity_id,
            )
        purchase.total = total.quantize(CENTS, ROUND_HALF_UP)
        db.add(purchase)
        return purchase.reference

    def _apply_expense(self, db: Session, descriptor: EntityDescriptor, context: ApplyContext) -> str:
        payload = ExpensePayload.model_validate(descriptor.data)

        if payload.operation is SyncOperation.CREATE:
            db.add(Expense(
                reference=descriptor.entity_id,
                sync_id=context.sync_id,
                category=payload.category,
                amount=payload.amount,
                expense_date=payload.expense_date or context.timestamp,
                payment_method=payload.payment_method or "cash",
                description=payload.description,
                recorded_by=context.user_id,
            ))
            return descriptor.entity_id

        expense = db.execute(
            select(Expense).where(Expense.reference == descriptor.entity_id).with_for_update()
        ).scalar_one_or_none()
        if expense is None or expense.is_deleted:
            raise ValidationError(f"Expense not found: {descriptor.entity_id}")

        if payload.operation is SyncOperation.DELETE:
            expense.is_deleted = True
        else:
            for attr in ("category", "amount", "expense_date", "payment_method", "description"):
                value = getattr(payload, attr)
                if value is not None:
                    setattr(expense, attr, value)
        expense.sync_id = context.sync_id
        return expense.reference

    def _apply_inventory_adjust(self, db: Session, descriptor: EntityDescriptor, context: ApplyContext) -> str:
        payload = InventoryAdjustPayload.model_validate(descriptor.data)
        product = self._lock_products(db, [payload.product_id])[payload.product_id]

        if payload.quantity_change is not None:
            delta = payload.quantity_change
            reason = MovementReason.ADJUSTMENT
        else:
            delta = payload.new_quantity - Decimal(product.stock_level)
            reason = MovementReason.COUNT

        self._move_stock(
            db, product, delta, reason, context,
            ref_type="inventory_adjust", ref_id=context.sync_id, notes=payload.notes or payload.reason,
        )
        return str(product.id)

