# Overview: Background job that sends a paid order to Verifone as an invoice, at most once.

from __future__ import annotations

import json
import threading

from flask import current_app

from ..extensions import db
from ..models import Order
from ..models.orders import (
    INVOICE_STATUS_FAILED,
    INVOICE_STATUS_PENDING,
    INVOICE_STATUS_SUCCESS,
)
from ..money import to_money
from ..time_utils import utcnow
from . import points_service
from .concurrency import claim_row, run_with_retry
from .invoice_service import build_invoice
from .verifone_client import client_from_app

"""
Invoice Sync Invariants

- AT-MOST-ONCE: the external CreateInvoice call happens only after this
  process wins the atomic claim (verifone_invoice_attempted_at IS NULL -> now).
  A second call for the same order returns without touching the network.
- NEVER RAISES: payment flows call this fire-and-forget; every failure ends
  in status 'failed' with the error text persisted.
- Points reconciliation after success is best-effort and never changes the
  invoice status.
"""


def _load_order(order_number: str) -> Order | None:
    return db.session.query(Order).filter_by(order_number=order_number).first()


def _claim(order_number: str) -> bool:
    def _op():
        claimed = claim_row(
            Order,
            where=[Order.order_number == order_number, Order.verifone_invoice_attempted_at.is_(None)],
            values={
                "verifone_invoice_status": INVOICE_STATUS_PENDING,
                "verifone_invoice_attempted_at": utcnow(),
            },
        )
        db.session.commit()
        return claimed

    return run_with_retry(_op)


def _update_order(order_number: str, **values):
    def _op():
        db.session.query(Order).filter_by(order_number=order_number).update(
            values, synchronize_session=False
        )
        db.session.commit()

    run_with_retry(_op)


def _club_balance(client, phone):
    """External balance for a club member, or None when unavailable."""
    result = client.get_customer_by_cellular(phone)
    if not result.success or result.customer is None or not result.customer.is_club_member:
        return None
    return result.customer.credit_points


def create_invoice(order_number: str, transaction_info: dict | None = None, client=None) -> str | None:
    """
    Create the Verifone invoice for a paid order.

    Returns the final invoice status, or None when the order does not exist or
    was already attempted.
    """
    log = current_app.logger
    try:
        order = _load_order(order_number)
        if not order:
            log.error("Invoice job: order not found: %s", order_number)
            return None

        if not _claim(order_number):
            log.info("Invoice job: invoice already attempted for order %s, skipping", order_number)
            return None

        log.info("Invoice job: starting invoice creation for order %s", order_number)
        client = client or client_from_app()

        order = _load_order(order_number)
        order_id = order.id
        user_id = order.user_id
        phone = (order.user.phone if order.user else None) or order.customer_phone
        points_used = to_money(order.points_used)

        points_before = None
        if user_id and phone:
            try:
                points_before = _club_balance(client, phone)
            except Exception as exc:
                log.warning("Invoice job: pre-invoice balance lookup failed for %s: %s", order_number, exc)

        document = build_invoice(order, transaction_info or {}, points_used)
        envelope = client.build_create_invoice_envelope(document)
        _update_order(order_number, verifone_invoice_request=json.dumps({"soap_envelope": envelope}))

        result = client.create_invoice(envelope)
        _update_order(order_number, verifone_invoice_response=json.dumps(result.to_dict()))

        if not result.success:
            message = result.description or "Unknown error"
            _update_order(
                order_number,
                verifone_invoice_status=INVOICE_STATUS_FAILED,
                verifone_invoice_error=message,
            )
            log.error("Invoice job: invoice rejected for order %s: %s (status %s)",
                      order_number, message, result.status)
            return INVOICE_STATUS_FAILED

        _update_order(
            order_number,
            verifone_invoice_status=INVOICE_STATUS_SUCCESS,
            verifone_invoice_no=result.invoice_no,
            verifone_invoice_synced_at=utcnow(),
        )
        log.info("Invoice job: invoice %s created for order %s", result.invoice_no, order_number)

        if user_id and phone and points_before is not None:
            try:
                points_after = _club_balance(client, phone)
                if points_after is None:
                    log.info("Invoice job: skipping points sync for %s, not a club member", order_number)
                else:
                    points_service.sync_from_external(order_id, user_id, points_before, points_after, points_used)
            except Exception:
                db.session.rollback()
                log.exception("Invoice job: points sync failed for order %s", order_number)
        else:
            log.info("Invoice job: skipping points sync for order %s", order_number)

        return INVOICE_STATUS_SUCCESS

    except Exception as exc:
        log.exception("Invoice job: unexpected error for order %s", order_number)
        db.session.rollback()
        try:
            _update_order(
                order_number,
                verifone_invoice_status=INVOICE_STATUS_FAILED,
                verifone_invoice_error=str(exc) or exc.__class__.__name__,
            )
        except Exception:
            db.session.rollback()
            log.exception("Invoice job: could not persist failure for order %s", order_number)
        return INVOICE_STATUS_FAILED


def create_invoice_async(order_number: str, transaction_info: dict | None = None, client=None) -> threading.Thread:
    """Fire-and-forget variant; runs the job on a daemon thread with its own app context."""
    app = current_app._get_current_object()

    def _run():
        with app.app_context():
            try:
                create_invoice(order_number, transaction_info, client=client)
            finally:
                db.session.remove()

    thread = threading.Thread(target=_run, name=f"invoice-{order_number}", daemon=True)
    thread.start()
    return thread
