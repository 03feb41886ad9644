"""
イベントストリームのテスト
"""
from unittest.mock import MagicMock


class TestEventStream:
    """配信・センサー・ヘルス状態のテスト"""

    def test_publish_to_subscribers(self):
        """購読者への配信と履歴"""
        from airsonos_bridge.event_stream import EventStream

        stream = EventStream()
        subscriber = MagicMock()
        stream.subscribe(subscriber)

        stream.publish("dashboard_update", {"score": 90})

        event = subscriber.call_args.args[0]
        assert event["type"] == "dashboard_update"
        assert event["data"] == {"score": 90}
        assert stream.recent()[-1] is event

    def test_failing_subscriber_skipped(self):
        """失敗した購読者はスキップし他へは配信"""
        from airsonos_bridge.event_stream import EventStream

        stream = EventStream()
        broken = MagicMock(side_effect=RuntimeError("closed socket"))
        healthy = MagicMock()
        stream.subscribe(broken)
        stream.subscribe(healthy)

        stream.publish("health", {"status": "healthy"})

        healthy.assert_called_once()

    def test_unsubscribe(self):
        """購読解除"""
        from airsonos_bridge.event_stream import EventStream

        stream = EventStream()
        subscriber = MagicMock()
        stream.subscribe(subscriber)
        stream.unsubscribe(subscriber)

        stream.publish("notification")

        subscriber.assert_not_called()

    def test_sensor_published_on_change_only(self):
        """センサー値は変化時のみ配信"""
        from airsonos_bridge.event_stream import EventStream

        stream = EventStream()
        stream.update_sensor("cpu", 12.5)
        stream.update_sensor("cpu", 12.5)
        stream.update_sensor("cpu", 13.0)

        assert stream.get_sensors() == {"airsonos_cpu": 13.0}
        assert len(stream.recent(event_type="sensor_update")) == 2

    def test_notification_levels(self):
        """通知レベル（未知のレベルはinfo）"""
        from airsonos_bridge.event_stream import EventStream

        stream = EventStream()
        stream.notify("critical", "High cpu usage: 99.0%")
        stream.notify("panic", "unknown level")

        levels = [e["data"]["level"] for e in stream.recent(event_type="notification")]
        assert levels == ["critical", "info"]

    def test_health_state(self):
        """ヘルス状態の更新"""
        from airsonos_bridge.event_stream import EventStream

        stream = EventStream()
        assert stream.get_health()["status"] == "starting"

        stream.set_health("degraded", "auto-tuning paused")

        health = stream.get_health()
        assert health["status"] == "degraded"
        assert health["detail"] == "auto-tuning paused"

    def test_history_bounded(self):
        """履歴は上限付き"""
        from airsonos_bridge.event_stream import EventStream

        stream = EventStream(history_size=5)
        for i in range(20):
            stream.publish("tick", {"i": i})

        assert [e["data"]["i"] for e in stream.recent()] == [15, 16, 17, 18, 19]
        assert len(stream.recent(limit=2)) == 2
