from utils.event_channel import EventChannel


def test_subscribe_and_unsubscribe():
    channel = EventChannel()
    received = []
    unsubscribe = channel.subscribe("logged_out", lambda event, payload: received.append((event, payload)))

    assert channel.publish("logged_out", reason="logout") == 1
    unsubscribe()
    assert channel.publish("logged_out", reason="logout") == 0
    assert received == [("logged_out", {"reason": "logout"})]


def test_wildcard_receives_every_event():
    channel = EventChannel()
    received = []
    channel.subscribe("*", lambda event, payload: received.append(event))

    channel.publish("session_started")
    channel.publish("appeal_created")
    assert received == ["session_started", "appeal_created"]


def test_failing_subscriber_does_not_block_others():
    channel = EventChannel()
    received = []

    def broken(_event, _payload):
        raise RuntimeError("boom")

    channel.subscribe("tokens_refreshed", broken)
    channel.subscribe("tokens_refreshed", lambda event, payload: received.append(event))

    assert channel.publish("tokens_refreshed") == 1
    assert received == ["tokens_refreshed"]


def test_clear_drops_all_subscribers():
    channel = EventChannel()
    channel.subscribe("identity_changed", lambda event, payload: None)
    channel.clear()
    assert channel.publish("identity_changed") == 0
