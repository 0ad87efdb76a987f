import mongomock
import pytest

from carts import Identity, LineInput, get_cart, upsert_lines
from database import oid
from errors import ConflictError, NotFoundError, ValidationError
from orders import (
    EditOrderItemRequest,
    PlaceOrderRequest,
    collapse_failed_statuses,
    edit_order_item,
    get_admin_order_details,
    get_order_details,
    place_order,
    update_order_status,
)
from notifications import notify_admins
from reports import dashboard_stats
from schemas import ORDER_STATUSES

DEVICE = "device-1"
PHONE = "01711111111"
ADDRESS = {"label": "Home", "street": "Road 4", "area": "Dhanmondi", "division": "Dhaka", "district": "Dhaka"}


@pytest.fixture
def fill_cart(db, policy, settings_store):
    def _fill(pairs, device=DEVICE):
        cart = upsert_lines(
            db,
            Identity(device_id=device),
            [LineInput(productId=p, quantity=q) for p, q in pairs],
            policy,
            settings_store,
        )
        return str(cart["_id"])
    return _fill


@pytest.fixture
def order_cart(db, policy, settings_store):
    def _order(cart_id, phone=PHONE):
        payload = PlaceOrderRequest(name="Rahim", phone=phone, address=ADDRESS, cart_id=cart_id,
                                    payment_method="cash-on-delivery")
        return place_order(db, payload, policy, settings_store)
    return _order


@pytest.fixture
def checkout(fill_cart, order_cart):
    def _checkout(pairs, device=DEVICE, phone=PHONE):
        return order_cart(fill_cart(pairs, device), phone)
    return _checkout


@pytest.fixture
def two_products(make_tag, make_product):
    tag = make_tag("fresh", 25)
    first = make_product(price=200, discount=20, tags=[tag], stock=5)
    second = make_product(price=160, discount=0, tags=[tag], stock=1)
    return first, second


def stages(order):
    return [s["stage"] for s in order["status"]]


def test_place_order_totals(db, settings_store, checkout, two_products):
    settings_store.update({"delivery_charge": 50, "platform_fee": 10})
    first, second = two_products

    order = checkout([(first, 1), (second, 1)])

    assert order["sub_total"] == 450
    assert order["discount"] == 50
    assert order["delivery_charge"] == 50
    assert order["grand_total"] == 460
    assert order["total_purchase_price"] == 360
    assert order["profit"] == 100
    line = order["items"][0]
    assert (line["base_price"], line["selling_price"], line["discounted_price"]) == (200, 250, 200)
    assert line["total_price"] == 200
    assert line["purchase_price"] == 200


def test_first_order_pays_delivery_although_cart_waived_it(db, policy, settings_store, fill_cart, order_cart,
                                                          two_products):
    settings_store.update({"delivery_charge": 50, "platform_fee": 10})
    first, _ = two_products
    cart_id = fill_cart([(first, 1)])
    assert get_cart(db, Identity(device_id=DEVICE), policy, settings_store)["delivery_charge"] == 0

    order = order_cart(cart_id)

    assert order["delivery_charge"] == 50
    assert order["grand_total"] == 200 + 50 + 10
    assert order["profit"] == 260 - 200


def test_order_line_total_is_rounded_once(make_tag, make_product, checkout):
    product = make_product(price=10.25, tags=[make_tag("fresh", 12.5)])

    order = checkout([(product, 4)])

    [line] = order["items"]
    assert (line["base_price"], line["selling_price"], line["discounted_price"]) == (10.25, 11.53, 11.53)
    assert line["total_price"] == 46.13
    assert line["purchase_price"] == 41
    assert order["grand_total"] == 46.13


def test_order_prices_are_frozen(db, checkout, two_products):
    first, second = two_products
    order = checkout([(first, 2)])
    stored = db["order"].find_one({"_id": order["_id"]})["items"]

    db["product"].update_one({"_id": oid(first)}, {"$set": {"price": 999, "discount": 0, "tags": []}})

    details = get_admin_order_details(db, str(order["_id"]))
    assert db["order"].find_one({"_id": order["_id"]})["items"] == stored
    assert details["products"][0]["selling_price"] == 250
    assert details["products"][0]["total_price"] == 400


def test_place_order_side_effects(db, checkout, two_products, stock_of):
    first, second = two_products

    order = checkout([(first, 2), (second, 3)])

    assert stock_of(first) == 3
    assert stock_of(second) == -2
    assert db["cart"].count_documents({}) == 0
    user = db["user"].find_one({"phone": PHONE})
    assert user["status"] == "placeholder"
    assert user["address"][0]["area"] == "Dhanmondi"
    assert order["order_id"] == "1"
    assert stages(order) == ["current"] + ["pending"] * 8
    assert [s["slug"] for s in order["status"]] == [slug for _, slug in ORDER_STATUSES]


def test_existing_user_is_reused(db, checkout, two_products):
    db["user"].insert_one({"name": "Rahim", "phone": PHONE, "role": "user", "status": "active", "address": []})
    first, _ = two_products
    checkout([(first, 1)])
    assert db["user"].count_documents({"phone": PHONE}) == 1
    assert db["user"].find_one({"phone": PHONE})["status"] == "active"


def test_order_ids_increase(checkout, two_products):
    first, _ = two_products
    assert checkout([(first, 1)], device="a")["order_id"] == "1"
    assert checkout([(first, 1)], device="b")["order_id"] == "2"


def test_order_ids_continue_after_existing_orders(db, checkout, two_products):
    db["order"].insert_many([{"order_id": "1", "phone": "0"}, {"order_id": "2", "phone": "0"}])
    first, _ = two_products
    assert checkout([(first, 1)])["order_id"] == "3"
    assert checkout([(first, 1)], device="b")["order_id"] == "4"


def test_bad_cart_references(db, policy, settings_store):
    payload = dict(name="Rahim", phone=PHONE, address=ADDRESS)
    with pytest.raises(ValidationError):
        place_order(db, PlaceOrderRequest(cart_id="nope", **payload), policy, settings_store)
    with pytest.raises(NotFoundError):
        place_order(db, PlaceOrderRequest(cart_id="0" * 24, **payload), policy, settings_store)


def test_missing_product_rejects_whole_order(db, policy, settings_store, two_products, stock_of):
    first, second = two_products
    cart = upsert_lines(db, Identity(device_id=DEVICE), [LineInput(productId=first, quantity=1), LineInput(productId=second, quantity=1)], policy, settings_store)
    db["product"].delete_one({"_id": oid(second)})

    with pytest.raises(ConflictError):
        place_order(db, PlaceOrderRequest(name="Rahim", phone=PHONE, address=ADDRESS, cart_id=str(cart["_id"])), policy, settings_store)

    assert stock_of(first) == 5
    assert db["order"].count_documents({}) == 0
    assert db["cart"].count_documents({}) == 1


def failing_on(collection_name, method):
    original = getattr(mongomock.Collection, method)

    def _call(self, *args, **kwargs):
        if self.name == collection_name:
            raise RuntimeError(f"{method} failed")
        return original(self, *args, **kwargs)
    return _call


def test_failed_insert_restores_stock(monkeypatch, db, fill_cart, order_cart, two_products, stock_of):
    first, second = two_products
    cart_id = fill_cart([(first, 2), (second, 1)])

    monkeypatch.setattr(mongomock.Collection, "insert_one", failing_on("order", "insert_one"))
    with pytest.raises(RuntimeError):
        order_cart(cart_id)
    monkeypatch.undo()

    assert stock_of(first) == 5
    assert stock_of(second) == 1
    assert db["order"].count_documents({}) == 0
    assert db["cart"].count_documents({}) == 1
    assert db["user"].count_documents({}) == 0


def test_failed_cart_cleanup_rolls_back_order(monkeypatch, db, fill_cart, order_cart, two_products, stock_of):
    first, _ = two_products
    cart_id = fill_cart([(first, 1)])

    monkeypatch.setattr(mongomock.Collection, "delete_one", failing_on("cart", "delete_one"))
    with pytest.raises(RuntimeError):
        order_cart(cart_id)
    monkeypatch.undo()

    assert stock_of(first) == 5
    assert db["order"].count_documents({}) == 0
    assert db["cart"].count_documents({}) == 1
    assert db["user"].count_documents({}) == 0


def test_duplicate_order_id_is_a_conflict(db, checkout, two_products, stock_of):
    first, second = two_products
    checkout([(second, 1)], device="someone-else", phone="0")
    db["counter"].update_one({"_id": "order_id"}, {"$set": {"seq": 0}})

    with pytest.raises(ConflictError):
        checkout([(first, 2)])

    assert stock_of(first) == 5
    assert db["order"].count_documents({}) == 1


def test_status_transition(db, checkout, two_products):
    first, _ = two_products
    order = checkout([(first, 1)])

    updated = update_order_status(db, str(order["_id"]), "on-the-way")

    assert stages(updated) == ["completed"] * 3 + ["current"] + ["pending"] * 5
    assert sum(s == "current" for s in stages(updated)) == 1


def test_reapplying_status_keeps_timestamps(db, checkout, two_products):
    first, _ = two_products
    order = checkout([(first, 1)])
    order_id = str(order["_id"])

    update_order_status(db, order_id, "accepted")
    first_pass = db["order"].find_one({"_id": order["_id"]})["status"]
    update_order_status(db, order_id, "accepted")
    second_pass = db["order"].find_one({"_id": order["_id"]})["status"]

    assert first_pass == second_pass


def test_status_can_move_backwards(db, checkout, two_products):
    first, _ = two_products
    order = checkout([(first, 1)])
    update_order_status(db, str(order["_id"]), "delivered")
    back = update_order_status(db, str(order["_id"]), "accepted")
    assert stages(back) == ["completed", "current"] + ["pending"] * 7


def test_unknown_status_is_rejected(db, checkout, two_products):
    first, _ = two_products
    order = checkout([(first, 1)])
    with pytest.raises(ValidationError):
        update_order_status(db, str(order["_id"]), "shipped")
    with pytest.raises(ValidationError):
        update_order_status(db, str(order["_id"]), "return")
    with pytest.raises(NotFoundError):
        update_order_status(db, "0" * 24, "accepted")


def test_edit_order_item_recomputes_totals(db, settings_store, checkout, two_products):
    settings_store.update({"delivery_charge": 50, "platform_fee": 10})
    first, second = two_products
    order = checkout([(first, 1), (second, 1)])

    edited = edit_order_item(db, str(order["_id"]), EditOrderItemRequest(
        product_id=first, weight=1.2, unit="kg", total_price=240, purchase_price=230,
    ))

    line = next(i for i in edited["items"] if i["product"] == first)
    assert (line["weight"], line["total_price"], line["purchase_price"], line["edited"]) == (1.2, 240, 230, True)
    assert edited["sub_total"] == 450
    assert edited["discount"] == 50
    assert edited["total_purchase_price"] == 390
    assert edited["grand_total"] == 240 + 200 + 50 + 10
    assert edited["profit"] == 500 - 390
    assert get_admin_order_details(db, str(order["_id"]))["is_price_edited"] is True


def test_edit_order_item_errors(db, checkout, two_products, make_product):
    first, _ = two_products
    order = checkout([(first, 1)])
    with pytest.raises(ValidationError):
        edit_order_item(db, str(order["_id"]), EditOrderItemRequest(product_id="bad"))
    with pytest.raises(NotFoundError):
        edit_order_item(db, str(order["_id"]), EditOrderItemRequest(product_id=make_product()))


def test_customer_view_collapses_failed_statuses(db, checkout, two_products):
    first, _ = two_products
    order = checkout([(first, 1)])
    update_order_status(db, str(order["_id"]), "rejected")

    customer = get_order_details(db, str(order["_id"]), PHONE)
    admin = get_admin_order_details(db, str(order["_id"]))

    slugs = [s["slug"] for s in customer["status"]]
    assert slugs == ["pending", "accepted", "ready-to-deliver", "on-the-way", "delivered", "completed", "canceled"]
    assert customer["status"][-1]["stage"] == "current"
    assert len(admin["status"]) == 9
    assert next(s for s in admin["status"] if s["slug"] == "rejected")["stage"] == "current"
    assert "purchase_price" not in customer["products"][0]
    assert admin["products"][0]["purchase_price"] == 200


def test_customer_cannot_read_someone_elses_order(db, checkout, two_products):
    first, _ = two_products
    order = checkout([(first, 1)])
    with pytest.raises(NotFoundError):
        get_order_details(db, str(order["_id"]), "01800000000")


def test_collapse_without_failure_only_hides_failed_entries():
    statuses = [{"name": n, "slug": s, "stage": "pending", "updatedAt": None} for n, s in ORDER_STATUSES]
    statuses[0]["stage"] = "current"
    visible = collapse_failed_statuses(statuses)
    assert [s["slug"] for s in visible] == ["pending", "accepted", "ready-to-deliver", "on-the-way", "delivered", "completed"]


def test_dashboard_stats(db, checkout, two_products):
    first, second = two_products
    delivered = checkout([(first, 1)], device="a")
    checkout([(second, 1)], device="b")
    update_order_status(db, str(delivered["_id"]), "delivered")

    stats = dashboard_stats(db)

    assert stats["orders"]["total"] == 2
    assert stats["orders"]["totalAmount"] == 200 + 200
    assert stats["orders"]["totalPurchaseAmount"] == 360
    assert stats["orders"]["completedAmount"] == 200
    assert stats["orders"]["totalCompletedOrders"] == 1
    assert stats["orders"]["totalPendingOrders"] == 1
    assert stats["orders"]["grossProfit"] == 200 - 360
    assert stats["products"]["total"] == 2


def test_notify_admins_is_best_effort(db, notifier):
    db["user"].insert_many([
        {"phone": "1", "role": "admin", "fcm_token": "good-token"},
        {"phone": "2", "role": "admin", "fcm_token": "bad-token"},
        {"phone": "3", "role": "admin", "fcm_token": None},
        {"phone": "4", "role": "user", "fcm_token": "customer-token"},
    ])
    notifier.fail_for = {"bad-token"}

    sent = notify_admins(db, notifier, {"_id": "o1", "order_id": "7", "name": "Rahim"})

    assert sent == 1
    assert [m["token"] for m in notifier.sent] == ["good-token"]
    assert notifier.sent[0]["body"] == "Order #7 placed by Rahim"
