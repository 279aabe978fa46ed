import json
from decimal import Decimal

import pytest

from settlement.cart import CartLine
from settlement.extensions import db
from settlement.models import Order, User
from settlement.models.orders import INVOICE_STATUS_FAILED, INVOICE_STATUS_NONE
from settlement.services import invoice_job, points_service
from settlement.services.checkout_service import create_order
from settlement.services.verifone_client import CreateInvoiceOk, CustomerLookupOk, VerifoneCustomer
from settlement.time_utils import utcnow


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


class StubVerifone:
    def get_customer_by_cellular(self, phone):
        return CustomerLookupOk(customer=VerifoneCustomer(True, Decimal("77"), "501"))

    def build_create_invoice_envelope(self, document):
        return "<Envelope/>"

    def create_invoice(self, envelope):
        return CreateInvoiceOk(invoice_no="880011", status=0)


def _order(number="ORD-1"):
    return create_order(number, [CartLine(sku="4925-0301-black-38", quantity=1, unit_price=100)])


def test_points_balance(db_session, runner, make_user):
    user = make_user(points=100)
    order = _order()
    points_service.spend(user.id, order.id, 20)

    result = runner.invoke(args=["points", "balance", str(user.id)])

    assert result.exit_code == 0
    assert f"User {user.id} balance: 80.00" in result.output
    assert "Used points in order ORD-1" in result.output


def test_points_balance_unknown_user(db_session, runner):
    result = runner.invoke(args=["points", "balance", "404"])
    assert result.exit_code == 1
    assert "FAIL" in result.output


def test_points_sync_all(db_session, runner, make_user, monkeypatch):
    user = make_user(points=5, phone="+972501234567")
    monkeypatch.setattr(points_service, "client_from_app", lambda: StubVerifone())

    result = runner.invoke(args=["points", "sync-all", "--batch-size", "10"])

    assert result.exit_code == 0, result.output
    assert "1 updated, 0 skipped, 0 failed" in result.output
    db.session.expire_all()
    assert db.session.get(User, user.id).points_balance == Decimal("77")


def test_invoices_create(db_session, runner, monkeypatch):
    _order()
    monkeypatch.setattr(invoice_job, "client_from_app", lambda: StubVerifone())

    result = runner.invoke(args=["invoices", "create", "ORD-1"])
    assert result.exit_code == 0, result.output
    assert "PASS Invoice 880011 created for ORD-1" in result.output

    again = runner.invoke(args=["invoices", "create", "ORD-1"])
    assert again.exit_code == 0
    assert "already attempted" in again.output


def test_invoices_reset_clears_failed_attempt(db_session, runner):
    _order()
    db.session.query(Order).filter_by(order_number="ORD-1").update({
        "verifone_invoice_status": INVOICE_STATUS_FAILED,
        "verifone_invoice_attempted_at": utcnow(),
        "verifone_invoice_error": "HTTP 500",
    })
    db.session.commit()

    result = runner.invoke(args=["invoices", "reset", "ORD-1", "--yes"])

    assert result.exit_code == 0, result.output
    db.session.expire_all()
    order = db.session.query(Order).filter_by(order_number="ORD-1").one()
    assert order.verifone_invoice_status == INVOICE_STATUS_NONE
    assert order.verifone_invoice_attempted_at is None
    assert order.verifone_invoice_error is None


def test_invoices_reset_refuses_non_failed(db_session, runner):
    _order()
    result = runner.invoke(args=["invoices", "reset", "ORD-1", "--yes"])
    assert result.exit_code == 1
    assert "Only failed invoices" in result.output


def test_points_balance_json(db_session, runner, make_user):
    user = make_user(points=100)
    order = _order()
    points_service.spend(user.id, order.id, 20)

    result = runner.invoke(args=["points", "balance", str(user.id), "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert Decimal(payload["balance"]) == Decimal("80")
    [entry] = payload["entries"]
    assert entry["order_id"] == order.id
    assert entry["kind"] == "SPEND"
    assert Decimal(entry["delta"]) == Decimal("-20")


def test_invoices_show(db_session, runner, make_coupon):
    make_coupon("SAVE10")
    create_order(
        "ORD-1",
        [CartLine(sku="4925-0301-black-38", quantity=2, unit_price=100)],
        coupon_codes=["SAVE10"],
    )

    result = runner.invoke(args=["invoices", "show", "ORD-1"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["order_number"] == "ORD-1"
    assert Decimal(payload["total"]) == Decimal("180")
    assert [item["product_sku"] for item in payload["items"]] == ["4925-0301-black-38"]
    assert [c["code"] for c in payload["applied_coupons"]] == ["SAVE10"]
    assert payload["verifone_invoice_status"] == INVOICE_STATUS_NONE


def test_invoices_show_unknown_order(db_session, runner):
    result = runner.invoke(args=["invoices", "show", "NOPE"])
    assert result.exit_code == 1
    assert "FAIL Order NOPE not found" in result.output
