from services.conversions.app.emitter import (
    ChannelUnavailable,
    ConversionEmitter,
    EmitterState,
    SkipReason,
    remember_pending_order,
)
from services.conversions.app.ledger import KeyValueLedger

ORDER_ID = "WEB1700000000123"
SUCCESS_QUERY = {"order_id": ORDER_ID, "type": "buy", "total": "1800", "product": "Seetara Chain Bag", "color": "Black"}


def make_emitter(pixel, storage=None):
    storage = {} if storage is None else storage
    return ConversionEmitter(KeyValueLedger(storage), pixel, storage), storage


def test_nothing_fires_before_hydration(pixel):
    emitter, _ = make_emitter(pixel)

    for _ in range(5):
        state = emitter.run_effect(SUCCESS_QUERY)

    assert state is EmitterState.AWAITING_HYDRATION
    assert emitter.locked_order_id is None
    assert pixel.calls == []


def test_purchase_fires_once_after_hydration(pixel):
    emitter, storage = make_emitter(pixel)
    emitter.run_effect(SUCCESS_QUERY)
    emitter.mark_hydrated()

    states = [emitter.run_effect(SUCCESS_QUERY) for _ in range(3)]

    assert states == [EmitterState.FIRED] * 3
    assert len(pixel.calls) == 1
    kind, params, options = pixel.calls[0]
    assert kind == "Purchase"
    assert params["value"] == 1800
    assert params["content_name"] == "Seetara Chain Bag - Black"
    assert options == {"eventID": ORDER_ID}
    assert storage["pixel_fired_WEB1700000000123"] == "true"


def test_reload_is_skipped_by_ledger(pixel):
    storage: dict[str, str] = {}
    first, _ = make_emitter(pixel, storage)
    first.mark_hydrated()
    first.run_effect(SUCCESS_QUERY)

    # ページ再読み込み = 新しいインスタンス、同じ sessionStorage
    second, _ = make_emitter(pixel, storage)
    second.mark_hydrated()
    state = second.run_effect(SUCCESS_QUERY)

    assert state is EmitterState.SKIPPED
    assert second.skip_reason is SkipReason.ALREADY_FIRED
    assert second.locked_order_id == ORDER_ID
    assert len(pixel.calls) == 1


def test_locked_id_survives_query_changes(pixel):
    emitter, _ = make_emitter(pixel)
    emitter.mark_hydrated()
    emitter.run_effect(SUCCESS_QUERY)

    emitter.run_effect({})
    emitter.run_effect({**SUCCESS_QUERY, "order_id": "WEB9999999999999"})

    assert emitter.locked_order_id == ORDER_ID
    assert len(pixel.calls) == 1


def test_waits_without_any_identifier(pixel):
    emitter, _ = make_emitter(pixel)
    emitter.mark_hydrated()

    state = emitter.run_effect({"type": "buy", "total": "1800"})

    assert state is EmitterState.AWAITING_STABLE_ID
    assert pixel.calls == []


def test_late_identifier_fires_once(pixel):
    emitter, _ = make_emitter(pixel)
    emitter.mark_hydrated()
    emitter.run_effect({"type": "buy", "total": "1800"})

    state = emitter.run_effect(SUCCESS_QUERY)

    assert state is EmitterState.FIRED
    assert [c[2]["eventID"] for c in pixel.calls] == [ORDER_ID]


def test_falls_back_to_pending_order_id(pixel):
    storage: dict[str, str] = {}
    remember_pending_order(storage, "WEB1700000000456")
    emitter, _ = make_emitter(pixel, storage)
    emitter.mark_hydrated()

    emitter.run_effect({"type": "buy", "total": "2500"})
    emitter.run_effect({"type": "buy", "total": "2500"})

    assert emitter.locked_order_id == "WEB1700000000456"
    assert len(pixel.calls) == 1
    assert pixel.calls[0][2] == {"eventID": "WEB1700000000456"}


def test_malformed_query_id_falls_back_to_pending(pixel):
    storage = {"pending_order_id": "WEB1700000000456"}
    emitter, _ = make_emitter(pixel, storage)
    emitter.mark_hydrated()

    emitter.run_effect({"order_id": "bad id", "type": "buy", "total": "100"})

    assert emitter.locked_order_id == "WEB1700000000456"


def test_stripped_query_fires_purchase_from_saved_order(pixel):
    storage: dict[str, str] = {}
    remember_pending_order(
        storage, "WEB1700000000456", order_type="buy", total=2500, product="Luna Bag", color="Red",
    )
    emitter, _ = make_emitter(pixel, storage)
    emitter.mark_hydrated()

    states = [emitter.run_effect({}) for _ in range(3)]

    assert states == [EmitterState.FIRED] * 3
    assert len(pixel.calls) == 1
    kind, params, options = pixel.calls[0]
    assert kind == "Purchase"
    assert params["value"] == 2500
    assert params["content_name"] == "Luna Bag - Red"
    assert options == {"eventID": "WEB1700000000456"}


def test_saved_order_for_another_id_is_not_used(pixel):
    storage: dict[str, str] = {}
    remember_pending_order(storage, "WEB1700000000456", total=2500)
    emitter, _ = make_emitter(pixel, storage)
    emitter.mark_hydrated()

    state = emitter.run_effect({"order_id": ORDER_ID, "type": "buy"})

    assert state is EmitterState.SKIPPED
    assert emitter.skip_reason is SkipReason.INVALID_VALUE
    assert pixel.calls == []


def test_inquiry_fires_lead_without_value(pixel):
    emitter, _ = make_emitter(pixel)
    emitter.mark_hydrated()

    emitter.run_effect({"order_id": ORDER_ID, "type": "inquiry", "product": "Luna Bag"})

    kind, params, options = pixel.calls[0]
    assert kind == "Lead"
    assert "value" not in params
    assert options == {"eventID": ORDER_ID}


def test_unparseable_total_suppresses_purchase(pixel):
    emitter, storage = make_emitter(pixel)
    emitter.mark_hydrated()

    state = emitter.run_effect({"order_id": ORDER_ID, "type": "buy", "total": "abc"})

    assert state is EmitterState.SKIPPED
    assert emitter.skip_reason is SkipReason.INVALID_VALUE
    assert pixel.calls == []
    assert "pixel_fired_WEB1700000000123" not in storage


def test_missing_pixel_degrades_silently():
    emitter, storage = make_emitter(None)
    emitter.mark_hydrated()

    state = emitter.run_effect(SUCCESS_QUERY)

    assert state is EmitterState.SKIPPED
    assert emitter.skip_reason is SkipReason.CHANNEL_UNAVAILABLE
    assert storage == {}


def test_blocked_pixel_degrades_without_retry():
    class BlockedPixel:
        calls = 0

        def track(self, *args):
            BlockedPixel.calls += 1
            raise ChannelUnavailable("fbq blocked")

    emitter, storage = make_emitter(BlockedPixel())
    emitter.mark_hydrated()

    emitter.run_effect(SUCCESS_QUERY)
    emitter.run_effect(SUCCESS_QUERY)

    assert BlockedPixel.calls == 1
    assert emitter.skip_reason is SkipReason.CHANNEL_UNAVAILABLE
    assert storage == {}


def test_broken_pixel_script_does_not_raise():
    class BrokenPixel:
        def track(self, *args):
            raise RuntimeError("fbq is not a function")

    emitter, storage = make_emitter(BrokenPixel())
    emitter.mark_hydrated()

    state = emitter.run_effect(SUCCESS_QUERY)

    assert state is EmitterState.SKIPPED
    assert emitter.skip_reason is SkipReason.CHANNEL_UNAVAILABLE
    assert storage == {}


def test_ledger_write_failure_keeps_fired_state(pixel):
    class ReadOnlyStorage(dict):
        def __setitem__(self, key, value):
            raise OSError("QuotaExceededError")

    emitter = ConversionEmitter(KeyValueLedger(ReadOnlyStorage()), pixel, {})
    emitter.mark_hydrated()

    emitter.run_effect(SUCCESS_QUERY)
    state = emitter.run_effect(SUCCESS_QUERY)

    assert state is EmitterState.FIRED
    assert len(pixel.calls) == 1
