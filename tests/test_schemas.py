import pytest
from pydantic import ValidationError

from conftest import week_schedule
from schemas import (
    Cart,
    CartItem,
    DaySchedule,
    Location,
    Order,
    OrderStatus,
    Store,
    User,
    can_transition,
    validate_schedule,
)


def _store(**overrides):
    fields = {
        "owner_id": "u1",
        "name": "Shop",
        "phone": "+14155550123",
        "categories": ["Ropa"],
        "schedule": week_schedule(),
        "location": {"alias": "Mall", "map_url": "https://maps.example.com/mall"},
    }
    fields.update(overrides)
    return Store(**fields)


@pytest.mark.parametrize("phone", ["+525512345678", "+14155550123", "+123456789012345"])
def test_store_accepts_international_phones(phone):
    assert _store(phone=phone).phone == phone


@pytest.mark.parametrize("phone", ["5512345678", "+0512345678", "+12345678", "+1234567890123456", "+52 55 1234 5678"])
def test_store_rejects_other_phones(phone):
    with pytest.raises(ValidationError):
        _store(phone=phone)


def test_store_categories_deduplicated():
    assert _store(categories=["Ropa", "Hogar", "Ropa"]).categories == ["Ropa", "Hogar"]


def test_schedule_rules():
    assert len(validate_schedule([DaySchedule(**d) for d in week_schedule()])) == 7
    with pytest.raises(ValidationError):
        _store(schedule=week_schedule() + [{"day": "monday"}])
    with pytest.raises(ValidationError):
        DaySchedule(day="monday", open="24:00")
    with pytest.raises(ValidationError):
        DaySchedule(day="funday")


def test_user_current_location_must_exist():
    location = Location(alias="Home", map_url="https://maps.example.com/h")
    with pytest.raises(ValidationError):
        User(name="A", email="a@example.com", password_hash="x", phone="+525511112222",
             locations=[location], current_location_index=1)
    with pytest.raises(ValidationError):
        User(name="A", email="a@example.com", password_hash="x", phone="+525511112222", locations=[])


def test_cart_totals_ignore_caller_values():
    cart = Cart(
        session_id="s",
        store_id="st",
        items=[
            CartItem(product_id="p1", name="A", price=10.1, quantity=3),
            CartItem(product_id="p2", name="B", price=0.2, quantity=1),
        ],
        total_items=1000,
        subtotal=0,
    )
    assert cart.total_items == 4
    assert cart.subtotal == 30.5


def test_cart_item_quantity_at_least_one():
    with pytest.raises(ValidationError):
        CartItem(product_id="p", name="A", price=1, quantity=0)


@pytest.mark.parametrize("current, target, allowed", [
    (OrderStatus.PENDING, OrderStatus.IN_PROGRESS, True),
    (OrderStatus.PENDING, OrderStatus.CANCELLED, True),
    (OrderStatus.PENDING, OrderStatus.COMPLETED, False),
    (OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED, True),
    (OrderStatus.IN_PROGRESS, OrderStatus.PENDING, False),
    (OrderStatus.COMPLETED, OrderStatus.CANCELLED, False),
    (OrderStatus.CANCELLED, OrderStatus.PENDING, False),
    (OrderStatus.PENDING, OrderStatus.PENDING, False),
])
def test_order_transitions(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_order_dumps_plain_status():
    order = Order(
        order_number="#000001",
        customer={"name": "C", "email": "C@Example.com", "phone": "1", "shipping_address": "x"},
        store_id="s",
        items=[{"product_id": "p", "name": "A", "quantity": 1, "price": 2}],
        totals={"subtotal": 2, "shipping": 0, "total": 2},
        payment={"method": "card", "details": "visa"},
    )
    dumped = order.model_dump()
    assert dumped["status"] == "pendiente"
    assert dumped["customer"]["email"] == "c@example.com"
    assert dumped["payment"]["status"] == "pending"
