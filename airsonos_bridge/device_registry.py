"""
デバイスレジストリモジュール
発見・検証済みスピーカーと信頼性メトリクスを(host, port)単位で保持
"""

import logging
import threading

from .models import DeviceRecord

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """スピーカーエンドポイント管理クラス"""

    def __init__(self):
        self._devices = {}
        self._lock = threading.RLock()

    def upsert(self, record: DeviceRecord, now=None) -> DeviceRecord:
        """登録または更新

        既存レコードは信頼性・遅延履歴を保持し、メタデータは同等以上の
        優先度を持つ手法からの結果でのみ置き換える。
        """
        with self._lock:
            existing = self._devices.get(record.key)
            if existing is None:
                if now is not None and record.last_seen is None:
                    record.last_seen = now
                self._devices[record.key] = record
                logger.info(f"[REGISTRY] Device added: {record.device_id} "
                            f"({record.name or 'unnamed'}, {record.method.value})")
                return record

            if record.method.priority >= existing.method.priority:
                existing.name = record.name or existing.name
                existing.model = record.model or existing.model
                existing.method = record.method
                existing.capabilities.update(record.capabilities)
            else:
                # 低優先度の結果は不足分のみ補完
                for key, value in record.capabilities.items():
                    existing.capabilities.setdefault(key, value)
            existing.manual = existing.manual or record.manual
            existing.verified = existing.verified or record.verified
            existing.online = True
            seen = record.last_seen if record.last_seen is not None else now
            if seen is not None:
                existing.last_seen = seen
            logger.debug(f"[REGISTRY] Device updated: {existing.device_id}")
            return existing

    def get(self, host, port=None):
        """ホスト（とポート）でレコード取得"""
        with self._lock:
            if port is not None:
                return self._devices.get((host, port))
            for record in self._devices.values():
                if record.host == host:
                    return record
            return None

    def get_by_id(self, device_id):
        """"host:port" 形式のIDでレコード取得"""
        host, _, port = str(device_id).rpartition(":")
        if host and port.isdigit():
            return self.get(host, int(port))
        return self.get(device_id)

    def remove(self, host, port):
        with self._lock:
            record = self._devices.pop((host, port), None)
        if record:
            logger.info(f"[REGISTRY] Device removed: {record.device_id}")
        return record

    def all(self):
        with self._lock:
            return list(self._devices.values())

    def evict_silent(self, now, window):
        """無応答期間がwindowを超えたデバイスを削除（手動設定は除外）"""
        evicted = []
        with self._lock:
            for key, record in list(self._devices.items()):
                if record.manual or record.last_seen is None:
                    continue
                if now - record.last_seen > window:
                    evicted.append(self._devices.pop(key))
        for record in evicted:
            logger.info(f"[REGISTRY] Device evicted after {window:.0f}s silence: "
                        f"{record.device_id}")
        return evicted

    def mean_reliability(self):
        """平均信頼性（デバイスなしはNone）"""
        with self._lock:
            if not self._devices:
                return None
            return sum(r.reliability for r in self._devices.values()) / len(self._devices)

    def clear(self):
        with self._lock:
            self._devices.clear()

    def __len__(self):
        with self._lock:
            return len(self._devices)

    def __contains__(self, key):
        with self._lock:
            return key in self._devices

    def __iter__(self):
        return iter(self.all())
