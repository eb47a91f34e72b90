"""Payment status state machine: polling, terminal states, manual checks and teardown."""

import asyncio

import httpx
import pytest

from conftest import json_response, mock_api
from delivery_client.models import CheckStatusResponse, PaymentStatus
from delivery_client.payment_status import PaymentStatusTracker, PaymentTrackerRegistry

INTERVAL = 0.01


class ScriptedStatus:
    """check_payment_status handler: returns the scripted answers, then repeats the last one."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls = 0

    def __call__(self, request):
        assert request.url.params["action"] == "check_payment_status"
        self.calls += 1
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, httpx.Response):
            return answer
        return json_response({"status": answer, "billing": "bill_1"})


def count_clears(cart):
    clears = []
    original = cart.clear

    def spy():
        clears.append(1)
        return original()

    cart.clear = spy
    return clears


def test_paid_clears_cart_once_and_stops(session, cart, burger):
    cart.add(burger, 3)
    clears = count_clears(cart)
    script = ScriptedStatus("pending", "PENDING", "PAID")
    tracker = PaymentStatusTracker(mock_api(session, script), cart, 1001, interval=INTERVAL)

    async def scenario():
        tracker.start()
        assert tracker.status == PaymentStatus.PENDING
        await asyncio.wait_for(tracker.wait(), timeout=2)
        calls_at_stop = script.calls
        await asyncio.sleep(INTERVAL * 5)
        return calls_at_stop

    calls_at_stop = asyncio.run(scenario())
    assert tracker.status == PaymentStatus.PAID
    assert tracker.status.is_accepting
    assert not tracker.is_polling
    assert script.calls == calls_at_stop == 3
    assert clears == [1]
    assert cart.is_empty()


def test_completed_is_accepting(session, cart, burger):
    cart.add(burger, 1)
    tracker = PaymentStatusTracker(mock_api(session, ScriptedStatus("Completed")), cart, 1, interval=INTERVAL)

    async def scenario():
        tracker.start()
        await asyncio.wait_for(tracker.wait(), timeout=2)

    asyncio.run(scenario())
    assert tracker.status == PaymentStatus.COMPLETED
    assert cart.is_empty()


@pytest.mark.parametrize("terminal", ["cancelled", "EXPIRED", "refunded"])
def test_rejecting_states_stop_without_clearing(session, cart, burger, terminal):
    cart.add(burger, 2)
    script = ScriptedStatus("pending", terminal)
    tracker = PaymentStatusTracker(mock_api(session, script), cart, 7, interval=INTERVAL)

    async def scenario():
        tracker.start()
        await asyncio.wait_for(tracker.wait(), timeout=2)
        await asyncio.sleep(INTERVAL * 3)

    asyncio.run(scenario())
    assert tracker.status.is_rejecting
    assert not tracker.is_polling
    assert script.calls == 2
    assert cart.cart_count == 2


def test_transient_errors_are_retried_on_next_cycle(session, cart, burger):
    cart.add(burger, 1)
    script = ScriptedStatus(
        httpx.ConnectError("sem rede"),
        httpx.Response(500, text="erro"),
        httpx.Response(200, text="não é json"),
        "paid",
    )
    tracker = PaymentStatusTracker(mock_api(session, script), cart, 5, interval=INTERVAL)

    async def scenario():
        tracker.start()
        await asyncio.wait_for(tracker.wait(), timeout=2)

    asyncio.run(scenario())
    assert script.calls == 4
    assert tracker.status == PaymentStatus.PAID
    assert cart.is_empty()


def test_missing_status_keeps_current_state(session, cart):
    script = ScriptedStatus(json_response({"billing": None}))
    tracker = PaymentStatusTracker(mock_api(session, script), cart, 5, interval=INTERVAL)
    assert asyncio.run(tracker.check_now()) == PaymentStatus.PENDING


def test_close_stops_the_timer(session, cart, burger):
    cart.add(burger, 1)
    script = ScriptedStatus("pending")
    tracker = PaymentStatusTracker(mock_api(session, script), cart, 9, interval=INTERVAL)

    async def scenario():
        tracker.start()
        await asyncio.sleep(INTERVAL * 5)
        tracker.close()
        assert not tracker.is_polling
        calls = script.calls
        await asyncio.sleep(INTERVAL * 5)
        return calls

    calls_at_close = asyncio.run(scenario())
    assert calls_at_close >= 1
    assert script.calls == calls_at_close
    assert tracker.is_closed
    assert tracker.status == PaymentStatus.PENDING
    assert cart.cart_count == 1


def test_result_in_flight_at_teardown_is_discarded(session, cart, burger):
    cart.add(burger, 1)

    async def scenario():
        release = asyncio.Event()

        async def slow_handler(request):
            await release.wait()
            return json_response({"status": "PAID"})

        tracker = PaymentStatusTracker(mock_api(session, slow_handler), cart, 3, interval=INTERVAL)
        pending_check = asyncio.ensure_future(tracker.check_now())
        await asyncio.sleep(0)
        tracker.close()
        release.set()
        return tracker, await pending_check

    tracker, result = asyncio.run(scenario())
    assert result == PaymentStatus.PENDING
    assert tracker.status == PaymentStatus.PENDING
    assert cart.cart_count == 1


def test_manual_check_does_not_start_or_reset_the_timer(session, cart):
    script = ScriptedStatus("pending")
    tracker = PaymentStatusTracker(mock_api(session, script), cart, 4, interval=60)

    async def scenario():
        status = await tracker.check_now()
        assert not tracker.is_polling
        tracker.start()
        await asyncio.sleep(0.05)
        calls_after_start = script.calls
        await tracker.check_now()
        assert tracker.is_polling
        tracker.close()
        return status, calls_after_start

    status, calls_after_start = asyncio.run(scenario())
    assert status == PaymentStatus.PENDING
    # 1 manual + 1 immediate check; the 60s timer never fired
    assert calls_after_start == 2
    assert script.calls == 3


def test_manual_check_reaching_paid_stops_polling(session, cart, burger):
    cart.add(burger, 1)
    script = ScriptedStatus("pending", "paid")
    tracker = PaymentStatusTracker(mock_api(session, script), cart, 4, interval=60)

    async def scenario():
        tracker.start()
        await asyncio.sleep(0.05)
        await tracker.check_now()
        await asyncio.wait_for(tracker.wait(), timeout=2)

    asyncio.run(scenario())
    assert tracker.status == PaymentStatus.PAID
    assert not tracker.is_polling
    assert cart.is_empty()


def test_terminal_state_is_final(session, cart):
    script = ScriptedStatus("paid", "pending")
    tracker = PaymentStatusTracker(mock_api(session, script), cart, 2, interval=INTERVAL)

    async def scenario():
        await tracker.check_now()
        await tracker.check_now()

    asyncio.run(scenario())
    assert tracker.status == PaymentStatus.PAID


def test_start_twice_keeps_a_single_timer(session, cart):
    script = ScriptedStatus("pending")
    registry = PaymentTrackerRegistry(mock_api(session, script), cart, interval=60)

    async def scenario():
        first = registry.track(11, "https://pagamento.example.com/bill_11")
        second = registry.track(11)
        first.start()
        await asyncio.sleep(0.05)
        registry.close_all()
        return first, second

    first, second = asyncio.run(scenario())
    assert first is second
    assert first.payment_link == "https://pagamento.example.com/bill_11"
    assert script.calls == 1
    assert first.is_closed
    assert registry.get(11) is None


def test_finished_trackers_are_dropped_when_another_order_is_tracked(session, cart):
    def handler(request):
        order_id = int(request.url.params["order_id"])
        return json_response({"status": "PAID" if order_id < 100 else "PENDING"})

    registry = PaymentTrackerRegistry(mock_api(session, handler), cart, interval=60)

    async def scenario():
        settled = []
        for order_id in range(1, 51):
            tracker = registry.track(order_id)
            await asyncio.wait_for(tracker.wait(), timeout=2)
            settled.append(tracker)
        active = registry.track(100)
        await asyncio.sleep(0.05)
        size = len(registry)
        registry.close_all()
        return settled, active, size

    settled, active, size = asyncio.run(scenario())
    assert size == 1
    assert all(t.status == PaymentStatus.PAID for t in settled)
    assert all(t.is_closed for t in settled)
    assert active.status == PaymentStatus.PENDING


def test_latest_settled_tracker_stays_reachable(session, cart):
    registry = PaymentTrackerRegistry(mock_api(session, ScriptedStatus("paid")), cart, interval=60)

    async def scenario():
        tracker = registry.track(5)
        await asyncio.wait_for(tracker.wait(), timeout=2)
        again = registry.track(5)
        registry.close_all()
        return tracker, again

    tracker, again = asyncio.run(scenario())
    assert tracker is again
    assert tracker.status == PaymentStatus.PAID


def test_released_order_gets_a_fresh_tracker(session, cart):
    registry = PaymentTrackerRegistry(mock_api(session, ScriptedStatus("pending")), cart, interval=60)

    async def scenario():
        first = registry.track(12)
        registry.release(12)
        second = registry.track(12)
        registry.close_all()
        return first, second

    first, second = asyncio.run(scenario())
    assert first is not second
    assert first.is_closed


@pytest.mark.parametrize("payload,expected", [
    ({"status": "PAID"}, PaymentStatus.PAID),
    ({"status": "pending", "billing": {"status": "PAID"}}, PaymentStatus.PAID),
    ({"status": "paid", "billing": {"status": "cancelled"}}, PaymentStatus.CANCELLED),
    ({"status": "PAID", "billing": "bill_1"}, PaymentStatus.PAID),
    ({"status": "processing"}, PaymentStatus.PENDING),
    ({"status": ""}, None),
    ({}, None),
])
def test_effective_status_of_check_response(payload, expected):
    assert CheckStatusResponse.model_validate(payload).to_status() == expected
