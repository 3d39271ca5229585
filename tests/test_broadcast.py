import json

from cricket_live.scoring.broadcast import BroadcastGateway, DeltaConsumer, DeltaMessage


def message(sequence):
    return DeltaMessage(sequence=sequence, event={"sequence": sequence}, innings_state={"total_runs": sequence})


class TestDeltaMessage:

    def test_wire_keys(self):
        data = json.loads(message(3).to_json())
        assert set(data) == {"sequence", "event", "inningsState", "changedFigures"}
        assert DeltaMessage.from_dict(data) == message(3)


class TestBroadcastGateway:

    def test_publish_reaches_match_subscribers_only(self):
        gateway = BroadcastGateway()
        m1 = gateway.subscribe("m1")
        m2 = gateway.subscribe("m2")

        assert gateway.publish("m1", message(1)) == 1
        assert m1.get(timeout=0.1).sequence == 1
        assert m2.get(timeout=0.01) is None

    def test_messages_arrive_in_publish_order(self):
        gateway = BroadcastGateway()
        sub = gateway.subscribe("m1")
        for seq in range(1, 6):
            gateway.publish("m1", message(seq))
        assert [m.sequence for m in sub.drain()] == [1, 2, 3, 4, 5]

    def test_unsubscribe(self):
        gateway = BroadcastGateway()
        sub = gateway.subscribe("m1")
        gateway.unsubscribe(sub)

        assert sub.closed
        assert gateway.subscriber_count("m1") == 0
        assert gateway.publish("m1", message(1)) == 0

    def test_lagging_subscriber_dropped(self):
        gateway = BroadcastGateway(queue_size=2)
        slow = gateway.subscribe("m1")
        gateway.publish("m1", message(1))
        gateway.publish("m1", message(2))

        assert gateway.publish("m1", message(3)) == 0
        assert slow.closed
        assert gateway.subscriber_count("m1") == 0
        # What was queued before the drop is still readable
        assert [m.sequence for m in slow.drain()] == [1, 2]


class TestDeltaConsumer:

    def test_duplicates_applied_once(self):
        consumer = DeltaConsumer()
        assert consumer.accept(message(1))
        assert consumer.accept(message(2))
        assert not consumer.accept(message(2))
        assert not consumer.accept(message(1))
        assert [m.sequence for m in consumer.applied] == [1, 2]

    def test_resume_from_known_sequence(self):
        consumer = DeltaConsumer(last_seen_sequence=5)
        assert not consumer.accept(message(5))
        assert consumer.accept(message(6))
        assert consumer.last_seen_sequence == 6
