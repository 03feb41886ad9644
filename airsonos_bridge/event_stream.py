"""
イベントストリームモジュール
ホスト連携層向けのセンサー値・ヘルス状態・通知・イベント配信
"""

import logging
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)

SENSOR_PREFIX = "airsonos_"
NOTIFICATION_LEVELS = ("info", "warning", "critical")


class EventStream:
    """メトリクス/イベント配信クラス"""

    def __init__(self, history_size=200):
        self.sensors = {}
        self.health = {"status": "starting", "detail": "", "timestamp": time.time()}
        self.history = deque(maxlen=history_size)
        self.subscribers = []
        self.lock = threading.Lock()

    def subscribe(self, callback):
        """購読者登録 callback(event)"""
        with self.lock:
            self.subscribers.append(callback)

    def unsubscribe(self, callback):
        with self.lock:
            if callback in self.subscribers:
                self.subscribers.remove(callback)

    def publish(self, event_type, data=None):
        """イベント配信（失敗した購読者はログ出力してスキップ）"""
        event = {"type": event_type, "data": data or {}, "timestamp": time.time()}
        with self.lock:
            self.history.append(event)
            subscribers = list(self.subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"[EVENTS] Subscriber failed for {event_type}: {e}")
        return event

    def update_sensor(self, key, value):
        """センサー値更新（airsonos_<key>）"""
        name = f"{SENSOR_PREFIX}{key}"
        with self.lock:
            changed = self.sensors.get(name) != value
            self.sensors[name] = value
        if changed:
            self.publish("sensor_update", {"sensor": name, "value": value})

    def notify(self, level, message, data=None):
        """重大度付き通知"""
        if level not in NOTIFICATION_LEVELS:
            level = "info"
        log = logger.warning if level != "info" else logger.info
        log(f"[EVENTS] Notification ({level}): {message}")
        return self.publish("notification", {"level": level, "message": message,
                                             "data": data or {}})

    def set_health(self, status, detail=""):
        """ヘルス状態更新"""
        with self.lock:
            changed = self.health["status"] != status
            self.health = {"status": status, "detail": detail, "timestamp": time.time()}
        if changed:
            self.publish("health", dict(self.health))

    def get_sensors(self):
        with self.lock:
            return dict(self.sensors)

    def get_health(self):
        with self.lock:
            return dict(self.health)

    def recent(self, limit=50, event_type=None):
        """直近イベント取得"""
        with self.lock:
            events = [e for e in self.history if event_type is None or e["type"] == event_type]
        return events[-limit:]
