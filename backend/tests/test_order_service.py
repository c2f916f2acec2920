import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest

from storefront.extensions import db
from storefront.models import Order, OrderAppliedPromoCode, OrderItem, Product, PromoCode
from storefront.services import email_service, order_service, settings_service
from storefront.services.checkout_session import SessionPayloadError
from storefront.services.inventory_service import POLICY_DEDUCT, POLICY_RESERVE
from storefront.services.order_service import (
    InvalidTransitionError,
    OrderError,
    OrderNotFoundError,
)
from storefront.validation import ValidationError


RESEND_HOST = "api.resend.com"


def _counters(product_id):
    db.session.expire_all()
    product = db.session.get(Product, product_id)
    return product.stock, product.reserved_stock


def _redemptions(promo_id):
    db.session.expire_all()
    return db.session.get(PromoCode, promo_id).redemptions


# =============================================================================
# MATERIALIZATION
# =============================================================================

def test_materializes_order_once(make_product, make_session, item_for):
    product = make_product(stock=10)
    session = make_session([item_for(product, 2, size="M")])

    first = order_service.create_order_from_session(session, policy=POLICY_DEDUCT)
    assert first.created is True
    order = first.order
    assert order.stripe_payment_id == "pi_test_1"
    assert order.status == "PROCESSING"
    assert order.is_in_person is False
    assert order.inventory_policy == POLICY_DEDUCT
    assert order.email == "ada@example.com"
    assert order.total == Decimal("50.00")
    assert [(i.product_id, i.quantity, i.size) for i in order.items] == [(product.id, 2, "M")]
    assert order.address_dict()["city"] == "London"

    second = order_service.create_order_from_session(session, policy=POLICY_DEDUCT)
    assert second.created is False
    assert second.order.id == order.id

    assert db.session.query(Order).count() == 1
    assert _counters(product.id) == (8, 0)


def test_session_id_is_key_without_payment_intent(make_product, make_session, item_for):
    product = make_product()
    session = make_session([item_for(product, 1)], session_id="cs_no_intent", payment_intent=None)
    result = order_service.create_order_from_session(session)
    assert result.order.stripe_payment_id == "cs_no_intent"


def test_policy_comes_from_store_flag(make_product, make_session, item_for):
    product = make_product(stock=5)
    settings_service.update_homepage_config({"auto_deduct_stock": True})

    result = order_service.create_order_from_session(make_session([item_for(product, 2)]))
    assert result.order.inventory_policy == POLICY_RESERVE
    assert _counters(product.id) == (5, 2)


def test_reserve_round_trip_restores_counters(make_product, make_session, item_for):
    shirt = make_product(name="Shirt", stock=20, reserved_stock=1)
    cap = make_product(name="Cap", stock=20, reserved_stock=0)
    session = make_session([item_for(shirt, 3), item_for(cap, 1)])

    result = order_service.create_order_from_session(session, policy=POLICY_RESERVE)
    assert _counters(shirt.id) == (20, 4)
    assert _counters(cap.id) == (20, 1)

    report = order_service.delete_order(result.order.id, policy=POLICY_RESERVE)
    assert report.policy_drift is False
    assert len(report.reversed_items) == 2
    assert _counters(shirt.id) == (20, 1)
    assert _counters(cap.id) == (20, 0)
    assert db.session.query(Order).count() == 0
    assert db.session.query(OrderItem).count() == 0


def test_deduct_round_trip_restores_counters(make_product, make_session, item_for):
    product = make_product(stock=4)
    result = order_service.create_order_from_session(
        make_session([item_for(product, 4)]), policy=POLICY_DEDUCT
    )
    assert _counters(product.id) == (0, 0)

    order_service.delete_order(result.order.id, policy=POLICY_DEDUCT)
    assert _counters(product.id) == (4, 0)


def test_stacked_promos_each_redeemed_once(make_product, make_promo, make_session, item_for):
    product = make_product(price="40.00")
    promo_a = make_promo(code="A", discount_type="FIXED", amount="5")
    promo_b = make_promo(code="B", discount_type="FIXED", amount="3", redemptions=2)
    session = make_session(
        [item_for(product, 1)],
        promo_codes=[{"code": "A"}, {"code": "B"}],
        metadata={"discount": "8.00"},
    )

    result = order_service.create_order_from_session(session, policy=POLICY_DEDUCT)
    order_service.create_order_from_session(session, policy=POLICY_DEDUCT)

    assert _redemptions(promo_a.id) == 1
    assert _redemptions(promo_b.id) == 3

    order = db.session.get(Order, result.order.id)
    assert order.promo_code_id == promo_a.id
    assert order.promo_code_code == "A"
    assert [p.code for p in order.applied_promos] == ["A", "B"]

    order_service.delete_order(order.id, policy=POLICY_DEDUCT)
    assert _redemptions(promo_a.id) == 0
    assert _redemptions(promo_b.id) == 2
    assert db.session.query(OrderAppliedPromoCode).count() == 0


def test_single_promo_gets_order_discount(make_product, make_promo, make_session, item_for):
    product = make_product(price="100.00")
    promo = make_promo(code="SAVE10")
    session = make_session(
        [item_for(product, 1)],
        metadata={"promoCode": "save10", "promoCodeId": str(promo.id), "discount": "10.00"},
    )

    result = order_service.create_order_from_session(session, policy=POLICY_DEDUCT)
    [applied] = result.order.applied_promos
    assert applied.promo_code_id == promo.id
    assert applied.discount_applied == Decimal("10.00")
    assert result.order.discount == Decimal("10.00")
    assert _redemptions(promo.id) == 1


def test_unknown_promo_is_not_counted(make_product, make_session, item_for):
    product = make_product()
    session = make_session([item_for(product, 1)], promo_codes=[{"code": "GONE"}])
    result = order_service.create_order_from_session(session, policy=POLICY_DEDUCT)
    assert result.created is True
    assert result.order.applied_promos == []
    assert result.order.promo_code_id is None
    assert result.order.promo_code_code == "GONE"


def test_unknown_product_keeps_line_without_inventory(make_product, make_session, item_for):
    product = make_product(stock=3)
    ghost = {"productId": 424242, "productName": "Retired Hat", "quantity": 1, "priceAtPurchase": "9.00"}
    session = make_session([item_for(product, 1), ghost])

    result = order_service.create_order_from_session(session, policy=POLICY_DEDUCT)
    items = result.order.items
    assert [i.product_id for i in items] == [product.id, None]
    assert items[1].product_name == "Retired Hat"
    assert _counters(product.id) == (2, 0)


def test_malformed_session_writes_nothing(make_product, make_session, item_for):
    product = make_product(stock=3)
    session = make_session([item_for(product, 1)], metadata={"items": "{broken"})
    with pytest.raises(SessionPayloadError):
        order_service.create_order_from_session(session)
    assert db.session.query(Order).count() == 0
    assert _counters(product.id) == (3, 0)


def test_failed_promo_write_rolls_back_whole_order(make_product, make_promo, make_session, item_for, monkeypatch):
    product = make_product(stock=5)
    promo = make_promo(code="SAVE10")

    def failing_increment(promo_ids):
        raise RuntimeError("redemption counter unavailable")

    monkeypatch.setattr(order_service.promotions_service, "increment_redemptions", failing_increment)
    session = make_session([item_for(product, 2)], metadata={"promoCode": "SAVE10"})
    with pytest.raises(RuntimeError):
        order_service.create_order_from_session(session, policy=POLICY_DEDUCT)

    assert db.session.query(Order).count() == 0
    assert db.session.query(OrderItem).count() == 0
    assert _counters(product.id) == (5, 0)
    assert _redemptions(promo.id) == 0


def test_failed_inventory_write_rolls_back_earlier_lines(make_product, make_session, item_for, monkeypatch):
    first = make_product(name="First", stock=5)
    second = make_product(name="Second", stock=5)
    real_apply = order_service.inventory_service.apply_sale

    def apply_then_fail(product_id, quantity, policy):
        if product_id == second.id:
            raise RuntimeError("stock write failed")
        return real_apply(product_id, quantity, policy)

    monkeypatch.setattr(order_service.inventory_service, "apply_sale", apply_then_fail)
    session = make_session([item_for(first, 2), item_for(second, 1)])
    with pytest.raises(RuntimeError):
        order_service.create_order_from_session(session, policy=POLICY_DEDUCT)

    assert db.session.query(Order).count() == 0
    assert _counters(first.id) == (5, 0)
    assert _counters(second.id) == (5, 0)


def test_non_numeric_promo_id_is_dropped(make_product, make_promo, make_session, item_for):
    product = make_product()
    promo = make_promo(code="SUMMER")
    session = make_session(
        [item_for(product, 1)],
        metadata={"promoCodeId": "summer-sale", "promoCode": "summer"},
        promo_codes=[{"id": "abc", "code": "SUMMER"}],
    )

    result = order_service.create_order_from_session(session, policy=POLICY_DEDUCT)
    assert result.created is True
    # Resolved by code instead
    assert [p.promo_code_id for p in result.order.applied_promos] == [promo.id]
    assert _redemptions(promo.id) == 1


def test_losing_the_race_returns_existing_order(make_product, make_session, item_for, monkeypatch):
    product = make_product(stock=10)
    session = make_session([item_for(product, 1)])
    winner = order_service.create_order_from_session(session, policy=POLICY_DEDUCT).order

    # Simulate a racer whose lookups ran before the winner committed
    real_find = order_service.find_order_by_payment_id
    calls = {"n": 0}

    def stale_find(payment_id):
        calls["n"] += 1
        if calls["n"] <= 2:
            return None
        return real_find(payment_id)

    monkeypatch.setattr(order_service, "find_order_by_payment_id", stale_find)
    result = order_service.create_order_from_session(session, policy=POLICY_DEDUCT)

    assert result.created is False
    assert result.order.id == winner.id
    assert db.session.query(Order).count() == 1
    # The loser's flush failed before any counter moved
    assert _counters(product.id) == (9, 0)


def test_thank_you_email_sent_after_commit(app, make_product, make_session, item_for, fake_http):
    sent = []

    def resend(request):
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "email_1"})

    fake_http.on(RESEND_HOST, resend)
    app.config["RESEND_API_KEY"] = "re_test"
    try:
        product = make_product()
        result = order_service.create_order_from_session(make_session([item_for(product, 1)]), policy=POLICY_DEDUCT)
        order_service.create_order_from_session(make_session([item_for(product, 1)]), policy=POLICY_DEDUCT)
    finally:
        app.config["RESEND_API_KEY"] = None

    assert len(sent) == 1
    assert sent[0]["to"] == ["ada@example.com"]
    assert sent[0]["subject"] == f"Order Confirmation - {result.order.id}"
    assert "Logo Tee" in sent[0]["html"]


def test_email_failure_does_not_fail_order(app, make_product, make_session, item_for, fake_http):
    fake_http.on(RESEND_HOST, status=500, json={"message": "boom"})
    app.config["RESEND_API_KEY"] = "re_test"
    try:
        result = order_service.create_order_from_session(
            make_session([item_for(make_product(), 1)]), policy=POLICY_DEDUCT
        )
    finally:
        app.config["RESEND_API_KEY"] = None
    assert result.created is True
    assert db.session.query(Order).count() == 1


def test_email_config_error_does_not_fail_order(app, make_product, make_session, item_for, monkeypatch):
    monkeypatch.setitem(app.config, "RESEND_API_KEY", "re_test")
    monkeypatch.delitem(app.config, "EMAIL_FROM")

    result = order_service.create_order_from_session(
        make_session([item_for(make_product(), 1)]), policy=POLICY_DEDUCT
    )
    assert result.created is True
    assert db.session.query(Order).count() == 1

    sent = email_service.send_email("ada@example.com", "Hello", "<p>Hi</p>")
    assert sent.ok is False
    assert "EMAIL_FROM" in sent.error


# =============================================================================
# COMPENSATION
# =============================================================================

def test_delete_skips_missing_products(make_product, make_promo, make_session, item_for):
    keep = make_product(name="Keep", stock=5)
    doomed = make_product(name="Doomed", stock=5)
    promo = make_promo(code="GONE")
    result = order_service.create_order_from_session(
        make_session([item_for(keep, 1), item_for(doomed, 2)], metadata={"promoCode": "GONE"}),
        policy=POLICY_DEDUCT,
    )
    order_id = result.order.id

    db.session.delete(db.session.get(Product, doomed.id))
    db.session.delete(db.session.get(PromoCode, promo.id))
    db.session.commit()

    report = order_service.delete_order(order_id, policy=POLICY_DEDUCT)
    assert [i["product_id"] for i in report.reversed_items] == [keep.id]
    assert len(report.skipped_items) == 1
    assert report.promo_ids_decremented == []
    assert _counters(keep.id) == (5, 0)
    assert db.session.get(Order, order_id) is None


def test_delete_uses_current_policy_and_reports_drift(make_product, make_session, item_for):
    product = make_product(stock=10)
    result = order_service.create_order_from_session(make_session([item_for(product, 2)]), policy=POLICY_RESERVE)
    assert _counters(product.id) == (10, 2)

    # Store flag is OFF, so reversal runs under DEDUCT
    report = order_service.delete_order(result.order.id)
    assert report.policy == POLICY_DEDUCT
    assert report.recorded_policy == POLICY_RESERVE
    assert report.policy_drift is True
    assert report.to_dict()["policy_drift"] is True
    assert _counters(product.id) == (12, 2)


def test_oversold_order_delete_restores_only_deducted_units(make_product, make_session, item_for):
    product = make_product(stock=1)
    result = order_service.create_order_from_session(make_session([item_for(product, 3)]), policy=POLICY_DEDUCT)
    [line] = result.order.items
    assert line.stock_deducted == 1
    assert _counters(product.id) == (0, 0)

    report = order_service.delete_order(result.order.id, policy=POLICY_DEDUCT)
    assert report.reversed_items[0]["restored"] == 1
    assert _counters(product.id) == (1, 0)


def test_fully_oversold_line_restores_nothing(make_product, make_session, item_for):
    product = make_product(stock=0)
    result = order_service.create_order_from_session(make_session([item_for(product, 2)]), policy=POLICY_DEDUCT)
    assert result.order.items[0].stock_deducted == 0

    order_service.delete_order(result.order.id, policy=POLICY_DEDUCT)
    assert _counters(product.id) == (0, 0)


def test_reserve_lines_do_not_record_deduction(make_product, make_session, item_for):
    product = make_product(stock=1)
    result = order_service.create_order_from_session(make_session([item_for(product, 3)]), policy=POLICY_RESERVE)
    assert result.order.items[0].stock_deducted is None

    order_service.delete_order(result.order.id, policy=POLICY_RESERVE)
    assert _counters(product.id) == (1, 0)


def test_delete_unknown_order(db_session):
    with pytest.raises(OrderNotFoundError):
        order_service.delete_order(999)
    with pytest.raises(ValidationError):
        order_service.delete_order("abc")


# =============================================================================
# STATUS
# =============================================================================

def _order(make_product, make_session, item_for, **kwargs):
    return order_service.create_order_from_session(
        make_session([item_for(make_product(), 1)], **kwargs), policy=POLICY_DEDUCT
    ).order


def test_status_walks_forward(make_product, make_session, item_for):
    order = _order(make_product, make_session, item_for)

    order = order_service.update_order_status(order.id, "shipped", "TRACK-1")
    assert order.status == "SHIPPED"
    assert order.tracking_number == "TRACK-1"
    assert order.shipped_at is not None

    order = order_service.update_order_status(order.id, "DELIVERED")
    assert order.status == "DELIVERED"

    with pytest.raises(InvalidTransitionError):
        order_service.update_order_status(order.id, "PROCESSING")
    with pytest.raises(InvalidTransitionError):
        order_service.update_order_status(order.id, "CANCELLED")


def test_status_rejects_skips_and_unknowns(make_product, make_session, item_for):
    order = _order(make_product, make_session, item_for)
    with pytest.raises(InvalidTransitionError) as excinfo:
        order_service.update_order_status(order.id, "DELIVERED")
    assert excinfo.value.details == {"from": "PROCESSING", "to": "DELIVERED"}

    with pytest.raises(ValidationError):
        order_service.update_order_status(order.id, "LOST")
    with pytest.raises(ValidationError):
        order_service.update_order_status(order.id, None)
    with pytest.raises(OrderNotFoundError):
        order_service.update_order_status(999, "SHIPPED")

    assert order_service.update_order_status(order.id, "CANCELLED").status == "CANCELLED"


def test_tracking_number_only(make_product, make_session, item_for):
    order = _order(make_product, make_session, item_for)
    order = order_service.update_order_status(order.id, None, "TRACK-9")
    assert (order.status, order.tracking_number) == ("PROCESSING", "TRACK-9")
    order = order_service.update_order_status(order.id, None, "")
    assert order.tracking_number is None


def test_shipping_email(app, make_product, make_session, item_for, fake_http):
    sent = []

    def resend(request):
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "email_2"})

    fake_http.on(RESEND_HOST, resend)
    order = _order(make_product, make_session, item_for)
    app.config["RESEND_API_KEY"] = "re_test"
    try:
        order_service.update_order_status(order.id, "SHIPPED", "TRK-42")
        # Re-saving SHIPPED with a new tracking number does not resend
        order_service.update_order_status(order.id, "SHIPPED", "TRK-43")
    finally:
        app.config["RESEND_API_KEY"] = None

    assert len(sent) == 1
    assert sent[0]["subject"] == f"Your Order {order.id} Has Shipped"
    assert "TRK-42" in sent[0]["html"]


def test_shipping_email_respects_setting(app, make_product, make_session, item_for, fake_http):
    fake_http.on(RESEND_HOST, json={"id": "email_3"})
    settings_service.update_homepage_config({"shipping_emails_enabled": False})
    order = _order(make_product, make_session, item_for)
    app.config["RESEND_API_KEY"] = "re_test"
    try:
        order_service.update_order_status(order.id, "SHIPPED")
    finally:
        app.config["RESEND_API_KEY"] = None
    assert fake_http.requests_to(RESEND_HOST) == []


def test_list_orders(make_product, make_session, item_for):
    _order(make_product, make_session, item_for)
    order_service.create_in_person_sale({
        "customerName": "Walk-in",
        "items": [{"productId": make_product(name="Mug").id, "quantity": 1}],
    }, policy=POLICY_DEDUCT)

    assert len(order_service.list_orders()) == 2
    assert len(order_service.list_orders(include_in_person=False)) == 1
    assert len(order_service.list_orders(status="delivered")) == 1
    with pytest.raises(ValidationError):
        order_service.list_orders(status="nope")


# =============================================================================
# IN-PERSON SALES
# =============================================================================

def test_in_person_sale_uses_catalog_prices(make_product):
    tee = make_product(name="Tee", price="20.00", stock=10)
    mug = make_product(name="Mug", price="8.50", stock=10)

    order = order_service.create_in_person_sale({
        "customerName": "Walk-in Customer",
        "customerEmail": "walkin@example.com",
        "customerLocation": "Pop-up market",
        "items": [
            {"productId": tee.id, "quantity": 2, "priceAtPurchase": "1.00", "size": "L"},
            {"productId": mug.id, "quantity": 1},
        ],
    }, policy=POLICY_DEDUCT)

    assert order.is_in_person is True
    assert order.status == "DELIVERED"
    assert order.stripe_payment_id is None
    assert order.total == Decimal("48.50")
    assert [i.price_at_purchase for i in order.items] == [Decimal("20.00"), Decimal("8.50")]
    assert order.address_dict() == {"type": "in-person", "location": "Pop-up market"}
    assert _counters(tee.id) == (8, 0)
    assert _counters(mug.id) == (9, 0)


def test_in_person_sale_validation(make_product):
    with pytest.raises(ValidationError):
        order_service.create_in_person_sale({"customerName": "", "items": [{"productId": 1, "quantity": 1}]})
    with pytest.raises(ValidationError):
        order_service.create_in_person_sale({"customerName": "A", "items": []})
    with pytest.raises(OrderError):
        order_service.create_in_person_sale({"customerName": "A", "items": [{"productId": 5555, "quantity": 1}]})
    assert db.session.query(Order).count() == 0


def test_update_in_person_sale_moves_inventory(make_product):
    tee = make_product(name="Tee", price="20.00", stock=10)
    mug = make_product(name="Mug", price="8.00", stock=10)
    sale = order_service.create_in_person_sale({
        "customerName": "Walk-in",
        "items": [{"productId": tee.id, "quantity": 3}],
    }, policy=POLICY_RESERVE)
    assert _counters(tee.id) == (10, 3)

    updated = order_service.update_in_person_sale(sale.id, {
        "customerName": "Walk-in Renamed",
        "items": [{"productId": mug.id, "quantity": 2}],
    }, policy=POLICY_RESERVE)

    assert updated.name == "Walk-in Renamed"
    assert updated.total == Decimal("16.00")
    assert [(i.product_id, i.quantity) for i in updated.items] == [(mug.id, 2)]
    assert _counters(tee.id) == (10, 0)
    assert _counters(mug.id) == (10, 2)
    assert db.session.query(OrderItem).count() == 1


def test_in_person_endpoints_do_not_touch_online_orders(make_product, make_session, item_for):
    online = _order(make_product, make_session, item_for)
    with pytest.raises(OrderNotFoundError):
        order_service.update_in_person_sale(online.id, {
            "customerName": "X",
            "items": [{"productId": online.items[0].product_id, "quantity": 1}],
        })
    with pytest.raises(OrderNotFoundError):
        order_service.delete_in_person_sale(online.id)


def test_delete_in_person_sale(make_product):
    tee = make_product(stock=10)
    sale = order_service.create_in_person_sale({
        "customerName": "Walk-in",
        "items": [{"productId": tee.id, "quantity": 4}],
    }, policy=POLICY_DEDUCT)
    report = order_service.delete_in_person_sale(sale.id, policy=POLICY_DEDUCT)
    assert report.order_id == sale.id
    assert _counters(tee.id) == (10, 0)


# =============================================================================
# PROFITS
# =============================================================================

AS_OF = datetime(2026, 10, 21, 15, 0)  # a Wednesday


def _placed_order(total, created_at, lines=(), status="DELIVERED"):
    order = Order(name="Report", total=Decimal(total), status=status, created_at=created_at)
    for product, quantity in lines:
        order.items.append(OrderItem(
            product_id=product.id if product is not None else None,
            product_name="Line",
            quantity=quantity,
            price_at_purchase=Decimal("1.00"),
        ))
    db.session.add(order)
    db.session.commit()
    return order


def test_profit_summary_buckets_by_calendar_period(make_product):
    costed = make_product(name="Costed", cost_price="10.00")
    uncosted = make_product(name="Uncosted")

    _placed_order("50.00", datetime(2026, 10, 21, 9, 30), [(costed, 2)])
    _placed_order("30.00", datetime(2026, 10, 19, 0, 0), [(uncosted, 1)])
    _placed_order("100.00", datetime(2026, 10, 2, 12, 0), [(costed, 4)])
    _placed_order("10.00", datetime(2025, 12, 31, 23, 59), [(None, 3)])
    _placed_order("999.00", datetime(2026, 10, 21, 10, 0), [(costed, 1)], status="CANCELLED")

    summary = order_service.profit_summary(AS_OF)
    periods = summary["periods"]
    assert summary["as_of"] == "2026-10-21T15:00:00Z"
    assert periods["day"] == {"revenue": 50.0, "cost": 20.0, "profit": 30.0}
    assert periods["week"] == {"revenue": 80.0, "cost": 20.0, "profit": 60.0}
    assert periods["month"] == {"revenue": 180.0, "cost": 60.0, "profit": 120.0}
    assert periods["year"] == {"revenue": 180.0, "cost": 60.0, "profit": 120.0}
    assert periods["lifetime"] == {"revenue": 190.0, "cost": 60.0, "profit": 130.0}


def test_profit_summary_empty_store(db_session):
    periods = order_service.profit_summary(AS_OF)["periods"]
    assert list(periods) == ["day", "week", "month", "year", "lifetime"]
    assert all(p == {"revenue": 0.0, "cost": 0.0, "profit": 0.0} for p in periods.values())
