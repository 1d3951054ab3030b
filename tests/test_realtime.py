from quizmate.models import ChatMessage
from quizmate.realtime import DELETE, INSERT, UPDATE, ChangeFeed


def test_filtered_delivery():
    feed = ChangeFeed()
    seen = []
    feed.subscribe("competition_chat", seen.append, filter={"competition_id": 1})

    feed.publish("competition_chat", INSERT, {"id": 1, "competition_id": 1})
    feed.publish("competition_chat", INSERT, {"id": 2, "competition_id": 2})
    feed.publish("competitions", INSERT, {"id": 3, "competition_id": 1})

    assert [event.record["id"] for event in seen] == [1]


def test_event_type_filter():
    feed = ChangeFeed()
    seen = []
    feed.subscribe("random_queue", seen.append, events=(UPDATE,))

    feed.publish("random_queue", INSERT, {"id": 1})
    feed.publish("random_queue", UPDATE, {"id": 1})

    assert [event.type for event in seen] == [UPDATE]


def test_delete_matches_old_record():
    feed = ChangeFeed()
    seen = []
    feed.subscribe("competitions", seen.append, filter={"id": 7})

    feed.publish("competitions", DELETE, {}, old_record={"id": 7})

    assert len(seen) == 1
    assert seen[0].old_record == {"id": 7}


def test_publish_row_uses_table_name():
    feed = ChangeFeed()
    seen = []
    feed.subscribe("competition_chat", seen.append)

    feed.publish_row(INSERT, ChatMessage(id=1, competition_id=3, user_id=1, message="hi"))

    assert seen[0].table == "competition_chat"
    assert seen[0].record["message"] == "hi"


def test_close_is_idempotent_and_stops_delivery():
    feed = ChangeFeed()
    seen = []
    subscription = feed.subscribe("competitions", seen.append)
    assert feed.subscriber_count() == 1

    subscription.close()
    subscription.close()
    feed.publish("competitions", UPDATE, {"id": 1})

    assert seen == []
    assert feed.subscriber_count() == 0


def test_failing_listener_does_not_block_others():
    feed = ChangeFeed()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    feed.subscribe("competitions", broken)
    feed.subscribe("competitions", seen.append)

    delivered = feed.publish("competitions", UPDATE, {"id": 1})

    assert delivered == 2
    assert len(seen) == 1


def test_listener_may_unsubscribe_during_delivery():
    feed = ChangeFeed()
    calls = []

    def once(event):
        calls.append(event)
        subscription.close()

    subscription = feed.subscribe("competitions", once)
    feed.publish("competitions", UPDATE, {"id": 1})
    feed.publish("competitions", UPDATE, {"id": 1})

    assert len(calls) == 1


def test_feed_close_drops_everything():
    feed = ChangeFeed()
    feed.subscribe("a", lambda event: None)
    feed.subscribe("b", lambda event: None)
    feed.close()
    assert feed.subscriber_count() == 0
    assert feed.publish("a", INSERT, {}) == 0
