from datetime import timedelta
from decimal import Decimal

from settlement.cart import CartLine
from settlement.models import Coupon, CouponRedemption
from settlement.services import coupon_service
from settlement.services.checkout_service import create_order
from settlement.services.coupon_service import (
    COUPON_EXPIRED,
    COUPON_INACTIVE,
    COUPON_NOT_APPLICABLE,
    COUPON_NOT_FOUND,
    COUPON_USAGE_EXCEEDED,
    COUPON_USAGE_PER_USER_EXCEEDED,
    MIN_CART_VALUE_NOT_MET,
    MISSING_USER_IDENTIFIER,
    STACKING_CONFLICT,
    validate_coupon,
)
from settlement.time_utils import utcnow


def _cart(*lines):
    return [CartLine(sku=sku, quantity=qty, unit_price=price) for sku, qty, price in lines]


CART_200 = _cart(("1000-2000-black-38", 1, 120), ("3000-4000-white-40", 2, 40))


class TestPercentAndFixed:
    def test_percent_all(self, db_session, make_coupon):
        make_coupon("SAVE10", "percent_all", 10)
        result = validate_coupon(" save10 ", CART_200)

        assert result.success
        assert result.subtotal == Decimal("200")
        assert result.discount_amount == Decimal("20.00")
        assert result.new_subtotal == Decimal("180.00")
        assert result.coupon["code"] == "SAVE10"
        assert result.coupon["discount_label"]["en"] == "10% OFF"
        assert sum(i.discount_amount for i in result.discounted_items) == result.discount_amount

    def test_fixed_amount_is_clamped_to_subtotal(self, db_session, make_coupon):
        make_coupon("BIG", "fixed", 300)
        result = validate_coupon("BIG", CART_200)

        assert result.success
        assert result.discount_amount == Decimal("200.00")
        assert result.new_subtotal == Decimal("0.00")
        assert sum(i.discount_amount for i in result.discounted_items) == Decimal("200.00")

    def test_fixed_amount_allocation_remainder_on_last_line(self, db_session, make_coupon):
        make_coupon("TEN", "fixed", 10)
        cart = _cart(("A", 1, 10), ("B", 1, 10), ("C", 1, 10))
        result = validate_coupon("TEN", cart)

        assert [i.discount_amount for i in result.discounted_items] == [
            Decimal("3.33"), Decimal("3.33"), Decimal("3.34"),
        ]

    def test_fixed_label_uses_currency_symbol(self, db_session, make_coupon):
        coupon = make_coupon("FIFTY", "fixed", 50)
        assert coupon_service.discount_label(coupon, "ILS")["en"] == "₪50 off"
        assert coupon_service.discount_label(coupon, "USD")["en"] == "$50 off"


class TestEligibility:
    def test_percent_specific_matches_base_sku(self, db_session, make_coupon, catalog):
        make_coupon("SHOES20", "percent_specific", 20, eligible_skus=["1000-2000"])
        fake = catalog()
        cart = _cart(("1000-2000-black-38", 2, 100), ("3000-4000-white-40", 1, 50))
        result = validate_coupon("SHOES20", cart, catalog=fake)

        assert result.success
        assert result.discount_amount == Decimal("40.00")
        assert [i.sku for i in result.discounted_items] == ["1000-2000-black-38"]
        assert fake.category_calls == 0

    def test_percent_specific_matches_category(self, db_session, make_coupon, catalog):
        make_coupon("SANDALS", "percent_specific", 10, eligible_categories=["Sandals"])
        fake = catalog(categories={"3000-4000-white-40": ["Women", "Sandals"]})
        cart = _cart(("1000-2000-black-38", 2, 100), ("3000-4000-white-40", 1, 50))
        result = validate_coupon("SANDALS", cart, catalog=fake)

        assert result.success
        assert result.discount_amount == Decimal("5.00")

    def test_percent_specific_without_rules_is_not_applicable(self, db_session, make_coupon, catalog):
        make_coupon("NORULES", "percent_specific", 20)
        result = validate_coupon("NORULES", CART_200, catalog=catalog())

        assert not result.success
        assert result.code == COUPON_NOT_APPLICABLE

    def test_category_lookup_failure_is_treated_as_no_match(self, db_session, make_coupon):
        class BrokenCatalog:
            def categories_for(self, skus):
                raise RuntimeError("catalog down")

        make_coupon("SANDALS", "percent_specific", 10, eligible_categories=["sandals"])
        result = validate_coupon("SANDALS", CART_200, catalog=BrokenCatalog())
        assert result.code == COUPON_NOT_APPLICABLE

    def test_bogo_coupon_frees_every_get_unit(self, db_session, make_coupon):
        coupon = make_coupon("PAIR", "bogo", None, eligible_skus=["1000-2000"], bogo_buy_qty=1, bogo_get_qty=1)
        cart = _cart(("1000-2000-black-38", 3, 100), ("3000-4000-white-40", 2, 50))
        result = validate_coupon("PAIR", cart)

        assert result.success
        assert result.discount_amount == Decimal("100.00")
        assert result.discounted_items[0].quantity == 1
        assert coupon_service.discount_label(coupon)["en"] == "Buy 1, get 1 free"


class TestGuards:
    def test_unknown_code(self, db_session):
        result = validate_coupon("NOPE", CART_200)
        assert result.code == COUPON_NOT_FOUND
        assert result.messages["en"] == "Invalid or expired coupon."

    def test_empty_cart(self, db_session, make_coupon):
        make_coupon("SAVE10")
        assert validate_coupon("SAVE10", []).code == COUPON_NOT_APPLICABLE

    def test_inactive(self, db_session, make_coupon):
        make_coupon("OFF", is_active=False)
        assert validate_coupon("OFF", CART_200).code == COUPON_INACTIVE

    def test_not_started_yet(self, db_session, make_coupon):
        make_coupon("SOON", start_date=utcnow() + timedelta(days=2))
        result = validate_coupon("SOON", CART_200)
        assert result.code == COUPON_INACTIVE
        assert "start_date" in result.details

    def test_expired(self, db_session, make_coupon):
        make_coupon("OLD", end_date=utcnow() - timedelta(days=1))
        assert validate_coupon("OLD", CART_200).code == COUPON_EXPIRED

    def test_global_usage_limit(self, db_session, make_coupon):
        make_coupon("LIMITED", usage_limit=5, usage_count=5)
        assert validate_coupon("LIMITED", CART_200).code == COUPON_USAGE_EXCEEDED

    def test_per_user_limit_requires_identifier(self, db_session, make_coupon):
        make_coupon("ONCE", usage_limit_per_user=1)
        assert validate_coupon("ONCE", CART_200).code == MISSING_USER_IDENTIFIER

    def test_per_user_limit_exceeded(self, db_session, make_coupon):
        coupon = make_coupon("ONCE", usage_limit_per_user=1)
        db_session.add(CouponRedemption(coupon_id=coupon.id, user_identifier="a@example.com", usage_count=1))
        db_session.commit()

        assert validate_coupon("ONCE", CART_200, user_identifier="a@example.com").code == \
            COUPON_USAGE_PER_USER_EXCEEDED
        assert validate_coupon("ONCE", CART_200, user_identifier="b@example.com").success

    def test_min_cart_value(self, db_session, make_coupon):
        make_coupon("BIGCART", min_cart_value=Decimal("300"))
        result = validate_coupon("BIGCART", CART_200)

        assert result.code == MIN_CART_VALUE_NOT_MET
        assert "₪300" in result.messages["en"]
        assert result.details == {"min_cart_value": "300.00", "subtotal": "200.00"}

    def test_validation_never_counts_usage(self, db_session, make_coupon):
        make_coupon("SAVE10")
        validate_coupon("SAVE10", CART_200)
        validate_coupon("SAVE10", CART_200)

        db_session.expire_all()
        assert db_session.query(Coupon).filter_by(code="SAVE10").one().usage_count == 0


class TestStacking:
    def test_non_stackable_coupon_cannot_join(self, db_session, make_coupon):
        make_coupon("FIRST", stackable=True)
        make_coupon("SECOND", stackable=False)
        result = validate_coupon("SECOND", CART_200, existing_coupon_codes=["FIRST"])

        assert result.code == STACKING_CONFLICT
        assert result.details == {"existing_codes": ["FIRST"]}

    def test_existing_non_stackable_blocks(self, db_session, make_coupon):
        make_coupon("FIRST", stackable=False)
        make_coupon("SECOND", stackable=True)
        assert validate_coupon("SECOND", CART_200, existing_coupon_codes=["FIRST"]).code == STACKING_CONFLICT

    def test_same_code_twice(self, db_session, make_coupon):
        make_coupon("FIRST", stackable=True)
        assert validate_coupon("first", CART_200, existing_coupon_codes=["FIRST"]).code == STACKING_CONFLICT

    def test_stackable_pair(self, db_session, make_coupon):
        make_coupon("FIRST", stackable=True)
        make_coupon("SECOND", "fixed", 15, stackable=True)
        result = validate_coupon("SECOND", CART_200, existing_coupon_codes=["FIRST"])

        assert result.success
        assert result.discount_amount == Decimal("15.00")

    def test_hebrew_locale_message(self, db_session, make_coupon):
        make_coupon("FIRST", stackable=False)
        make_coupon("SECOND", stackable=True)
        result = validate_coupon("SECOND", CART_200, locale="he", existing_coupon_codes=["FIRST"])
        assert result.messages["en"] == result.messages["he"]


class TestAutoApply:
    def test_best_auto_coupon_wins(self, db_session, make_coupon):
        make_coupon("AUTO5", "percent_all", 5, auto_apply=True)
        make_coupon("AUTO20", "fixed", 20, auto_apply=True)
        make_coupon("AUTO50", "fixed", 50, auto_apply=True, is_active=False)
        make_coupon("MANUAL", "fixed", 90)

        best = coupon_service.evaluate_auto_apply(CART_200)
        assert best.coupon["code"] == "AUTO20"
        assert best.discount_amount == Decimal("20.00")

    def test_no_auto_coupons(self, db_session, make_coupon):
        make_coupon("MANUAL", "fixed", 90)
        assert coupon_service.evaluate_auto_apply(CART_200) is None


class TestRedemptions:
    def test_usage_is_counted_once_per_order(self, db_session, make_coupon, make_user, catalog):
        make_coupon("SAVE10", usage_limit_per_user=3)
        user = make_user(email="Shopper@Example.com")
        order = create_order("ORD-1", CART_200, user_id=user.id, coupon_codes=["SAVE10"], catalog=catalog())

        assert coupon_service.record_redemptions(order) is True
        assert coupon_service.record_redemptions(order) is False

        db_session.expire_all()
        coupon = db_session.query(Coupon).filter_by(code="SAVE10").one()
        redemption = db_session.query(CouponRedemption).filter_by(coupon_id=coupon.id).one()
        assert coupon.usage_count == 1
        assert redemption.user_identifier == "shopper@example.com"
        assert redemption.usage_count == 1

    def test_second_order_increments_existing_redemption(self, db_session, make_coupon, make_user, catalog):
        make_coupon("SAVE10", usage_limit_per_user=3)
        user = make_user()
        for number in ("ORD-1", "ORD-2"):
            order = create_order(number, CART_200, user_id=user.id, coupon_codes=["SAVE10"], catalog=catalog())
            coupon_service.record_redemptions(order)

        db_session.expire_all()
        redemption = db_session.query(CouponRedemption).one()
        assert redemption.usage_count == 2
        assert db_session.query(Coupon).one().usage_count == 2

    def test_guest_without_identifier_counts_global_usage_only(self, db_session, make_coupon, catalog):
        make_coupon("SAVE10")
        order = create_order("ORD-G", CART_200, coupon_codes=["SAVE10"], catalog=catalog())

        assert coupon_service.record_redemptions(order) is True
        db_session.expire_all()
        assert db_session.query(Coupon).one().usage_count == 1
        assert db_session.query(CouponRedemption).count() == 0

    def test_redemption_identifier(self, db_session, make_user):
        user = make_user(email=" Mixed@Case.COM ")
        assert coupon_service.redemption_identifier(user) == "mixed@case.com"
        assert coupon_service.redemption_identifier(None, " +972501234567 ") == "+972501234567"
        assert coupon_service.redemption_identifier(None) is None
