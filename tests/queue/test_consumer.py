from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from triggerkit.config import QueueConfig
from triggerkit.db.tx import DbFactory
from triggerkit.errors import QueueError
from triggerkit.queue import QueueConsumer, QueueMessage


class TestNext:
    def test_next_returns_single_message(self, redis_client, queue_config, stream_response) -> None:
        redis_client.xreadgroup.return_value = stream_response(queue_config.stream_key, ("1-0", {"test": "data"}))
        consumer = QueueConsumer(redis_client, queue_config)

        msg = consumer.next(block_ms=100)

        assert isinstance(msg, QueueMessage)
        assert msg.payload == {"test": "data"}
        assert redis_client.xreadgroup.call_args.kwargs["count"] == 1

    def test_next_returns_none_when_no_messages(self, redis_client, queue_config) -> None:
        assert QueueConsumer(redis_client, queue_config).next(block_ms=100) is None

    def test_next_uses_config_block_ms(self, redis_client, queue_config) -> None:
        QueueConsumer(redis_client, queue_config).next()

        assert redis_client.xreadgroup.call_args.kwargs["block"] == queue_config.block_ms

    def test_next_rejects_invalid_block_ms(self, redis_client, queue_config) -> None:
        with pytest.raises(QueueError, match="block_ms"):
            QueueConsumer(redis_client, queue_config).next(block_ms=0)

    def test_next_returns_none_when_stopped(self, redis_client, queue_config) -> None:
        consumer = QueueConsumer(redis_client, queue_config)
        consumer.stop()

        assert consumer.next(block_ms=100) is None
        redis_client.xreadgroup.assert_not_called()


class TestProcess:
    def test_commits_then_acks(self, engine, entity_tables, redis_client, queue_config, read_rows) -> None:
        consumer = QueueConsumer(redis_client, queue_config)
        msg = QueueMessage(id="1-0", payload={"name": "queued"}, stream_key=queue_config.stream_key)

        def handler(m, tx):
            tx.execute("INSERT INTO account (name) VALUES (:name)", {"name": m.payload["name"]})

        consumer.process(msg, handler=handler, db_factory=DbFactory(engine))

        assert [r["name"] for r in read_rows("account")] == ["queued"]
        redis_client.xack.assert_called_once_with(queue_config.stream_key, queue_config.consumer_group, "1-0")

    def test_handler_failure_rolls_back_and_does_not_ack(
        self, engine, entity_tables, redis_client, queue_config, read_rows
    ) -> None:
        consumer = QueueConsumer(redis_client, queue_config)
        msg = QueueMessage(id="1-0", payload={}, stream_key=queue_config.stream_key)

        def handler(m, tx):
            tx.execute("INSERT INTO account (name) VALUES ('doomed')")
            raise RuntimeError("handler failed")

        with pytest.raises(RuntimeError, match="handler failed"):
            consumer.process(msg, handler=handler, db_factory=DbFactory(engine))

        assert read_rows("account") == []
        redis_client.xack.assert_not_called()

    def test_run_stops_after_stop(self, redis_client, queue_config, stream_response) -> None:
        redis_client.xreadgroup.return_value = stream_response(queue_config.stream_key, ("1-0", {"n": 1}))
        consumer = QueueConsumer(redis_client, queue_config)
        db_factory = MagicMock()
        seen = []

        def handler(m, tx):
            seen.append(m.id)
            consumer.stop()

        consumer.run(handler=handler, db_factory=db_factory)

        assert seen == ["1-0"]
        db_factory.begin.return_value.commit.assert_called_once()


def test_recover_stale_uses_config_idle(redis_client, queue_config: QueueConfig) -> None:
    redis_client.xautoclaim.return_value = [b"0-0", []]
    consumer = QueueConsumer(redis_client, queue_config)

    assert consumer.recover_stale() == []
    assert redis_client.xautoclaim.call_args.kwargs["min_idle_time"] == queue_config.claim_idle_ms
