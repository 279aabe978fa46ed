# Overview: Service-layer loyalty points ledger; idempotent spend/earn and external balance sync.

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..cart import effective_price
from ..extensions import db
from ..models import Order, PointsEntry, User
from ..models.customers import POINTS_KIND_EARN, POINTS_KIND_SPEND
from ..money import ZERO, money_sum, round2, to_money
from .concurrency import is_unique_violation, run_with_retry
from .verifone_client import ExternalServiceError, client_from_app

"""
Points Ledger Invariants

- At most one EARN and one SPEND entry per order (unique (order_id, kind)).
- users.points_balance changes in the same transaction as the entry insert,
  except when it is overwritten from the external loyalty system.
- Spending never drives the balance below zero: the decrement is a
  conditional UPDATE guarded by points_balance >= n.
- Repeating spend/earn for an order returns the existing entry unchanged.
"""

ENTRY_FENCE = "uq_points_entries_order_kind"
DEFAULT_EARN_RATE = Decimal("0.05")


class PointsError(Exception):
    pass


class InsufficientPoints(PointsError):
    pass


@dataclass
class PointsSyncSummary:
    total_processed: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_processed": self.total_processed,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def _find_entry(order_id: int, kind: str) -> PointsEntry | None:
    return db.session.query(PointsEntry).filter_by(order_id=order_id, kind=kind).first()


def _run_fenced(op):
    """
    Run a ledger operation; on a duplicate (order_id, kind) insert from a
    concurrent caller, roll back and run it once more so it observes the
    winner's row.
    """
    try:
        return run_with_retry(op)
    except IntegrityError as exc:
        db.session.rollback()
        if not is_unique_violation(exc, ENTRY_FENCE):
            raise
        return run_with_retry(op)


def _earn_rate() -> Decimal:
    return to_money(current_app.config.get("POINTS_EARN_RATE", DEFAULT_EARN_RATE))


def _points_amount(points) -> Decimal:
    try:
        amount = round2(points)
    except (TypeError, ArithmeticError) as exc:
        raise PointsError(f"Invalid points amount: {points!r}") from exc
    if amount <= 0:
        raise PointsError("points_to_spend must be positive")
    return amount


# =============================================================================
# Spend
# =============================================================================

def spend_in_session(user_id: int, order_id: int, points: Decimal) -> PointsEntry:
    """
    Debit points inside the caller's transaction. Does not commit.

    Used by checkout so the order row and the debit commit together.
    """
    existing = _find_entry(order_id, POINTS_KIND_SPEND)
    if existing:
        return existing

    result = db.session.execute(
        update(User)
        .where(User.id == user_id, User.points_balance >= points)
        .values(points_balance=User.points_balance - points)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientPoints(f"Insufficient points balance for user {user_id}")

    order = db.session.get(Order, order_id)
    entry = PointsEntry(
        user_id=user_id,
        order_id=order_id,
        kind=POINTS_KIND_SPEND,
        delta=-points,
        reason=f"Used points in order {order.order_number if order else 'unknown'}",
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def spend(user_id: int, order_id: int, points_to_spend) -> PointsEntry:
    """
    Debit `points_to_spend` from a user for an order, exactly once.

    Raises InsufficientPoints (balance untouched) when the balance is short.
    """
    points = _points_amount(points_to_spend)

    def _op():
        try:
            entry = spend_in_session(user_id, order_id, points)
        except InsufficientPoints:
            db.session.rollback()
            raise
        db.session.commit()
        return entry

    entry = _run_fenced(_op)
    current_app.logger.info("Points spend for order %s: %s", order_id, entry.delta)
    return entry


# =============================================================================
# Earn / external sync
# =============================================================================

def earn(order_id: int) -> PointsEntry | None:
    """
    Credit points for a paid order, exactly once.

    Returns None for guest orders. Raises PointsError when the order is missing.
    """
    def _op():
        existing = _find_entry(order_id, POINTS_KIND_EARN)
        if existing:
            return existing

        order = db.session.get(Order, order_id)
        if not order:
            raise PointsError(f"Order {order_id} not found")
        if not order.user_id:
            return None

        paid = money_sum(effective_price(i.price, i.sale_price) * i.quantity for i in order.items)
        earned = round2(paid * _earn_rate())

        entry = PointsEntry(
            user_id=order.user_id,
            order_id=order.id,
            kind=POINTS_KIND_EARN,
            delta=earned,
            reason=f"Points earned from order {order.order_number}",
        )
        db.session.add(entry)
        db.session.flush()

        if earned != 0:
            db.session.execute(
                update(User)
                .where(User.id == order.user_id)
                .values(points_balance=User.points_balance + earned)
                .execution_options(synchronize_session=False)
            )
        db.session.commit()
        return entry

    return _run_fenced(_op)


def sync_from_external(order_id: int, user_id: int, points_before, points_after, points_used) -> PointsEntry | None:
    """
    Reconcile the ledger with the loyalty system after an invoice was created.

    The external balance is the source of truth: points_balance is always
    overwritten with points_after. An EARN entry is written only for a
    positive movement and only once per order.
    """
    before = round2(points_before)
    after = round2(points_after)
    used = round2(points_used)
    delta = max(ZERO, after - before + used)

    def _op():
        entry = _find_entry(order_id, POINTS_KIND_EARN)
        if delta > 0 and entry is None:
            order = db.session.get(Order, order_id)
            entry = PointsEntry(
                user_id=user_id,
                order_id=order_id,
                kind=POINTS_KIND_EARN,
                delta=delta,
                reason=f"Points synced from Verifone for order {order.order_number if order else order_id}",
            )
            db.session.add(entry)
            db.session.flush()

        db.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(points_balance=after)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return entry

    entry = _run_fenced(_op)
    current_app.logger.info(
        "Points synced for user %s order %s: before=%s after=%s used=%s earned=%s",
        user_id, order_id, before, after, used, delta,
    )
    return entry


# =============================================================================
# Reads
# =============================================================================

def get_balance(user_id: int) -> Decimal:
    user = db.session.get(User, user_id)
    if not user:
        raise PointsError(f"User {user_id} not found")
    return to_money(user.points_balance)


def list_entries(user_id: int) -> list[PointsEntry]:
    return (
        db.session.query(PointsEntry)
        .filter_by(user_id=user_id)
        .order_by(PointsEntry.created_at.desc(), PointsEntry.id.desc())
        .all()
    )


# =============================================================================
# Batch sync (scheduled)
# =============================================================================

def _apply_external_balance(user_id: int, balance: Decimal, customer_no: str | None):
    def _op():
        values = {"points_balance": balance}
        if customer_no:
            values["verifone_customer_no"] = customer_no
        db.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

    run_with_retry(_op)


def batch_sync_all_users(
    batch_size: int = 100,
    max_batches: int | None = None,
    concurrency: int = 5,
    client=None,
) -> PointsSyncSummary:
    """
    Refresh cached balances for every user with a phone number.

    Users are paged by ascending id. External lookups for a page run on a
    bounded thread pool; all database writes happen on the calling thread.
    """
    client = client or client_from_app()
    app = current_app._get_current_object()
    batch_size = max(int(batch_size), 1)
    concurrency = max(int(concurrency), 1)

    def _lookup(phone):
        with app.app_context():
            return client.get_customer_by_cellular(phone)

    summary = PointsSyncSummary()
    last_id = 0
    batches = 0

    while max_batches is None or batches < max_batches:
        users = (
            db.session.query(User)
            .filter(User.id > last_id, User.phone.isnot(None), User.phone != "")
            .order_by(User.id.asc())
            .limit(batch_size)
            .all()
        )
        if not users:
            break
        batches += 1
        last_id = users[-1].id
        snapshot = [(u.id, u.phone, to_money(u.points_balance)) for u in users]

        with ThreadPoolExecutor(max_workers=concurrency) as pool:
            futures = [pool.submit(_lookup, phone) for _, phone, _ in snapshot]

        for (user_id, _phone, cached), future in zip(snapshot, futures):
            summary.total_processed += 1
            try:
                result = future.result()
            except ExternalServiceError as exc:
                summary.failed += 1
                summary.errors.append({"user_id": user_id, "error": str(exc)})
                continue
            except Exception as exc:
                current_app.logger.exception("Points lookup crashed for user %s", user_id)
                summary.failed += 1
                summary.errors.append({"user_id": user_id, "error": str(exc)})
                continue

            if not result.success:
                summary.failed += 1
                summary.errors.append({"user_id": user_id, "error": result.description or "Unknown error"})
                continue

            customer = result.customer
            if customer is None or not customer.is_club_member or customer.credit_points == cached:
                summary.skipped += 1
                continue

            try:
                _apply_external_balance(user_id, customer.credit_points, customer.customer_no)
            except SQLAlchemyError as exc:
                db.session.rollback()
                summary.failed += 1
                summary.errors.append({"user_id": user_id, "error": str(exc)})
                continue
            summary.updated += 1

        current_app.logger.info(
            "Points sync batch %d done (last user id %s): %s", batches, last_id, summary.to_dict()
        )

    return summary
