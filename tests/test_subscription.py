import threading

import pytest

from meshpub.message import Message
from meshpub.subscription import Subscription, SubscriptionCancelled


def _msg(data=b"x"):
    return Message(data=data, topic="test")


def test_deliver_then_next_returns_message():
    sub = Subscription("test")
    msg = _msg()
    assert sub.deliver(msg) is True
    assert sub.next(timeout=1) is msg


def test_messages_come_out_in_order():
    sub = Subscription("test")
    messages = [_msg(bytes([i])) for i in range(5)]
    results = [sub.deliver(m) for m in messages]
    assert all(results)
    assert [sub.next(timeout=1) for _ in messages] == messages


def test_next_times_out():
    sub = Subscription("test")
    with pytest.raises(TimeoutError):
        sub.next(timeout=0.01)


def test_full_buffer_drops():
    sub = Subscription("test", buffer_size=2)
    assert sub.deliver(_msg()) is True
    assert sub.deliver(_msg()) is True
    assert sub.deliver(_msg()) is False


def test_close_drains_then_raises():
    sub = Subscription("test")
    msg = _msg()
    sub.deliver(msg)
    sub.close()
    assert sub.deliver(_msg()) is False
    assert sub.next(timeout=1) is msg
    with pytest.raises(SubscriptionCancelled, match="subscription cancelled"):
        sub.next(timeout=1)


def test_close_is_idempotent():
    sub = Subscription("test")
    sub.close()
    sub.close()
    with pytest.raises(SubscriptionCancelled):
        sub.next(timeout=0.01)


def test_cancel_calls_handler():
    seen = []
    sub = Subscription("test", on_cancel=seen.append)
    sub.cancel()
    assert seen == [sub]
    assert sub.deliver(_msg()) is True


def test_cancel_without_handler_closes():
    sub = Subscription("test")
    sub.cancel()
    with pytest.raises(SubscriptionCancelled):
        sub.next(timeout=0.01)


def test_topic_attribute():
    assert Subscription("news").topic == "news"


def test_negative_buffer_rejected():
    with pytest.raises(ValueError):
        Subscription("test", buffer_size=-1)


def test_delivery_from_another_thread_wakes_reader():
    sub = Subscription("test")
    msg = _msg()
    timer = threading.Timer(0.05, sub.deliver, args=(msg,))
    timer.start()
    try:
        assert sub.next(timeout=5) is msg
    finally:
        timer.join()


def test_close_from_another_thread_wakes_reader():
    sub = Subscription("test")
    timer = threading.Timer(0.05, sub.close)
    timer.start()
    try:
        with pytest.raises(SubscriptionCancelled):
            sub.next(timeout=5)
    finally:
        timer.join()