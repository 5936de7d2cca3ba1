import pytest
from pydantic import ValidationError

from services.conversions.app.events import (
    Lead,
    Purchase,
    Refund,
    content_descriptor,
    conversion_event_adapter,
    parse_total,
)

ORDER_ID = "WEB1700000000123"


def test_purchase_requires_positive_value():
    with pytest.raises(ValidationError):
        Purchase(dedup_key=ORDER_ID)
    with pytest.raises(ValidationError):
        Purchase(dedup_key=ORDER_ID, value=0)
    with pytest.raises(ValidationError):
        Purchase(dedup_key=ORDER_ID, value=float("nan"))


def test_lead_has_no_value():
    lead = Lead(dedup_key=ORDER_ID, content_name="Bag")

    kind, params, options = lead.pixel_call()

    assert kind == "Lead"
    assert "value" not in params
    assert options == {"eventID": ORDER_ID}


def test_empty_dedup_key_is_rejected():
    with pytest.raises(ValidationError):
        Lead(dedup_key="")


def test_purchase_pixel_call_uses_order_id_verbatim():
    purchase = Purchase(
        dedup_key=ORDER_ID,
        value=1800,
        content_name="Seetara Chain Bag - Black",
        content_ids=["Seetara Chain Bag"],
    )

    kind, params, options = purchase.pixel_call()

    assert kind == "Purchase"
    assert params == {
        "value": 1800,
        "currency": "NPR",
        "content_name": "Seetara Chain Bag - Black",
        "content_type": "product",
        "content_ids": ["Seetara Chain Bag"],
        "order_id": ORDER_ID,
    }
    assert options == {"eventID": ORDER_ID}


def test_refund_capi_event_keeps_same_event_id():
    refund = Refund(dedup_key=ORDER_ID, value=1800)

    event = refund.capi_event({"ph": ["abc"]}, action_source="system_generated")

    assert event["event_name"] == "Refund"
    assert event["event_id"] == ORDER_ID
    assert event["action_source"] == "system_generated"
    assert event["custom_data"]["value"] == 1800
    assert event["custom_data"]["refund_reason"] == "order_cancelled"
    assert isinstance(event["event_time"], int)


def test_refund_is_not_a_pixel_event():
    with pytest.raises(TypeError):
        Refund(dedup_key=ORDER_ID, value=10).pixel_call()


def test_union_dispatches_on_kind():
    event = conversion_event_adapter.validate_python(
        {"kind": "Refund", "dedup_key": ORDER_ID, "value": 5}
    )

    assert isinstance(event, Refund)


@pytest.mark.parametrize(
    "raw, expected",
    [("1800", 1800.0), ("1,800", 1800.0), (1799.5, 1799.5), (" 250 ", 250.0)],
)
def test_parse_total_accepts_positive_numbers(raw, expected):
    assert parse_total(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "abc", "0", "-10", "inf", "NaN", True])
def test_parse_total_rejects_everything_else(raw):
    assert parse_total(raw) is None


def test_content_descriptor():
    assert content_descriptor("Chain Bag", "Black") == "Chain Bag - Black"
    assert content_descriptor("Chain Bag") == "Chain Bag"
