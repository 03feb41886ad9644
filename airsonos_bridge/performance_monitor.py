"""
パフォーマンス監視モジュール
リソース・音声品質・ネットワーク・デバイス信頼性を集計し、健全性スコアと
性能問題を判定して自動調整を起動する
"""

import logging
import time
from collections import deque

import psutil

from .config import *
from .errors import DeviceCommunicationError, ResourceSamplingError
from .models import DeviceRecord, DiscoveryMethod, MetricSnapshot, NetworkQuality, \
    PerformanceIssue, Severity
from .network_diagnostics import classify_network_quality, tcp_probe

logger = logging.getLogger(__name__)

ALERT_DEDUP_WINDOW = 300.0      # 秒
NETWORK_TREND_WINDOW = 300.0    # 秒
NETWORK_INSTABILITY_VARIANCE = 200.0  # ms
LOW_PERFORMANCE_SCORE = 70
LOW_AUDIO_QUALITY = 70
UNRELIABLE_ISSUE_THRESHOLD = 70
TREND_SAMPLES = 10


def calculate_trend(values):
    """最小二乗法による傾き（直近10サンプル）"""
    values = list(values)[-TREND_SAMPLES:]
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = n * (n + 1) / 2
    sum_y = sum(values)
    sum_xy = sum((x + 1) * y for x, y in enumerate(values))
    sum_x2 = n * (n + 1) * (2 * n + 1) / 6
    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


class PerformanceMonitor:
    """パフォーマンス監視クラス

    メトリクスの変更はすべて制御スレッドから行う。tuning_callbackには
    (condition, context)を受け取る自動調整エントリポイントを渡す。
    """

    def __init__(self, config, registry, buffer_manager, event_stream=None,
                 clock=time.monotonic, process=None, tuning_callback=None):
        self.config = config
        self.monitoring = config.monitoring
        self.policy = config.tuning
        self.registry = registry
        self.buffer_manager = buffer_manager
        self.event_stream = event_stream
        self.clock = clock
        self.process = process
        self.tuning_callback = tuning_callback

        self.snapshot = MetricSnapshot()
        self.previous_snapshot = None

        history_size = self.monitoring.history_size
        self.cpu_history = deque(maxlen=history_size)
        self.memory_history = deque(maxlen=history_size)
        self.network_history = deque(maxlen=history_size)
        self.audio_history = deque(maxlen=history_size)
        self.score_history = deque(maxlen=history_size)
        self.alerts = {"cpu": deque(maxlen=100), "memory": deque(maxlen=100)}

        self.start_time = clock()
        self.last_dropout = None
        self.last_heal = self.start_time
        self.underruns = 0
        self.overruns = 0
        self.overall_score = 100.0

    # =========================================================================
    # 通知ヘルパー
    # =========================================================================

    def _sensor(self, key, value):
        if self.event_stream:
            self.event_stream.update_sensor(key, value)

    def _notify(self, level, message, data=None):
        if self.event_stream:
            self.event_stream.notify(level, message, data or {})

    def _trigger(self, condition, context):
        """自動調整要求"""
        if not self.monitoring.auto_tuning_enabled or self.tuning_callback is None:
            return None
        return self.tuning_callback(condition, context)

    def _replace_snapshot(self, **changes):
        self.previous_snapshot = self.snapshot
        self.snapshot = self.snapshot.with_changes(**changes)

    # =========================================================================
    # リソースサンプリング
    # =========================================================================

    def initialize(self):
        """監視初期化（CPU計測の基準点取得）"""
        try:
            if self.process is None:
                self.process = psutil.Process()
            self.process.cpu_percent(interval=None)
            logger.info("[MONITOR] Performance monitor initialized")
            return True
        except Exception as e:
            logger.error(f"[MONITOR] Initialization failed: {e}")
            return False

    def read_resources(self):
        """プロセスCPU%・RSS・システムメモリ%読み取り"""
        try:
            if self.process is None:
                self.process = psutil.Process()
            cpu = self.process.cpu_percent(interval=None)
            rss = self.process.memory_info().rss
            memory_percent = psutil.virtual_memory().percent
        except (psutil.Error, OSError) as e:
            raise ResourceSamplingError(f"resource read failed: {e}")
        return cpu, rss, memory_percent

    def sample(self):
        """1ティック分のサンプリング（失敗時はResourceSamplingError）"""
        cpu, rss, memory_percent = self.read_resources()
        now = self.clock()

        self.apply_healing(now)
        self._replace_snapshot(
            cpu_percent=cpu,
            memory_bytes=rss,
            memory_percent=memory_percent,
            per_device_metrics=tuple((r.device_id, r.reliability) for r in self.registry.all()),
            timestamp=time.time(),
        )
        self.cpu_history.append((now, cpu))
        self.memory_history.append((now, memory_percent))

        self.check_resource_alerts(cpu, memory_percent, now)
        self._sensor("cpu", round(cpu, 1))
        self._sensor("memory", round(memory_percent, 1))
        self._sensor("audio_quality", round(self.snapshot.audio_quality_score, 1))

        if cpu > self.monitoring.cpu_alert_threshold:
            self._trigger("high_cpu", {"cpu": cpu})
        if memory_percent > self.monitoring.memory_alert_threshold:
            self._trigger("high_memory", {"memory": memory_percent})
        return self.snapshot

    def tick(self):
        """サンプリング実行（失敗したティックはスキップ）"""
        try:
            return self.sample()
        except ResourceSamplingError as e:
            logger.warning(f"[MONITOR] Sampling skipped: {e}")
            return None

    # =========================================================================
    # 音声品質イベント
    # =========================================================================

    def _adjust_quality(self, delta):
        score = max(0.0, min(100.0, self.snapshot.audio_quality_score + delta))
        self._replace_snapshot(audio_quality_score=score)

    def apply_healing(self, now=None):
        """ドロップアウトのない期間に応じて品質スコアを回復"""
        now = self.clock() if now is None else now
        start = self.last_heal
        if self.last_dropout is not None:
            start = max(start, self.last_dropout + self.policy.quality_recovery_delay)
        self.last_heal = now

        elapsed = now - start
        if elapsed <= 0 or self.snapshot.audio_quality_score >= 100.0:
            return self.snapshot.audio_quality_score
        self._adjust_quality(elapsed * self.policy.quality_recovery_per_second)
        return self.snapshot.audio_quality_score

    def handle_event(self, event_type, payload=None):
        """制御キューから受け取ったイベントを反映"""
        payload = payload or {}
        handlers = {
            "audio_dropout": self.handle_audio_dropout,
            "buffer_underrun": self.handle_buffer_underrun,
            "buffer_overrun": self.handle_buffer_overrun,
            "audio_quality_change": self.handle_audio_quality_change,
            "device_connected": lambda p: self.update_device_metrics(p.get("host"), "connected", p),
            "device_disconnected": lambda p: self.update_device_metrics(p.get("host"), "disconnected"),
            "device_error": lambda p: self.update_device_metrics(p.get("host"), "error", p.get("error")),
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.debug(f"[MONITOR] Unhandled event: {event_type}")
            return False
        handler(payload)
        return True

    def handle_audio_dropout(self, payload=None):
        """ドロップアウト処理"""
        payload = payload or {}
        now = self.clock()
        self.apply_healing(now)
        self.last_dropout = now
        self._replace_snapshot(dropout_count=self.snapshot.dropout_count + 1)
        self._adjust_quality(-self.policy.dropout_penalty)
        self.audio_history.append((now, "dropout", payload.get("device")))

        device = payload.get("device", "unknown")
        logger.warning(f"[MONITOR] Audio dropout detected on {device}")
        self._notify("warning", f"Audio dropout detected on {device}", payload)
        self._trigger("audio_dropouts", {
            "dropouts": self.snapshot.dropout_count,
            "device": payload.get("device"),
        })

    def handle_buffer_underrun(self, payload=None):
        """アンダーラン処理"""
        self.underruns += 1
        self.audio_history.append((self.clock(), "underrun", (payload or {}).get("device")))
        self.buffer_manager.record_underrun()
        self.buffer_manager.adjust()
        self._adjust_quality(-self.policy.underrun_penalty)

    def handle_buffer_overrun(self, payload=None):
        """オーバーラン処理"""
        self.overruns += 1
        self.audio_history.append((self.clock(), "overrun", (payload or {}).get("device")))
        self.buffer_manager.record_overrun()
        self.buffer_manager.adjust()
        self._adjust_quality(-self.policy.overrun_penalty)

    def handle_audio_quality_change(self, payload):
        """音声品質変化イベント（dropoutsは前回イベントからの増分）"""
        now = self.clock()
        changes = {}
        if payload.get("quality_score") is not None:
            changes["audio_quality_score"] = max(0.0, min(100.0, float(payload["quality_score"])))
        new_dropouts = int(payload.get("dropouts") or 0)
        if new_dropouts > 0:
            changes["dropout_count"] = self.snapshot.dropout_count + new_dropouts
            self.last_dropout = now
        if changes:
            self._replace_snapshot(**changes)
        self.last_heal = now

        score = self.snapshot.audio_quality_score
        self._sensor("audio_quality", round(score, 1))
        if score < LOW_AUDIO_QUALITY:
            self._trigger("audio_quality", {
                "quality_score": score,
                "dropouts": self.snapshot.dropout_count,
            })

    # =========================================================================
    # デバイス信頼性
    # =========================================================================

    def update_device_metrics(self, device_id, kind, value=None):
        """デバイスメトリクス更新（error/connected/disconnected/latency/timeout）"""
        if not device_id:
            return None
        now = self.clock()
        record = self.registry.get_by_id(device_id)
        if record is None:
            host, _, port = str(device_id).partition(":")
            name = value.get("name", "") if isinstance(value, dict) else ""
            record = self.registry.upsert(
                DeviceRecord(host=host, port=int(port) if port.isdigit() else SONOS_PORT,
                             name=name, method=DiscoveryMethod.SCAN), now=now)

        policy = self.policy
        if kind == "error":
            record.error_count += 1
            record.recent_errors.append(now)
            while record.recent_errors and now - record.recent_errors[0] > policy.error_frequency_window:
                record.recent_errors.popleft()
            penalty = min(policy.reliability_error_penalty * len(record.recent_errors),
                          policy.reliability_error_penalty_cap)
            record.reliability = max(0.0, record.reliability - penalty)
            logger.debug(f"[MONITOR] Device {record.device_id} error: {value}")
        elif kind == "connected":
            record.reliability = min(100.0, record.reliability + policy.reliability_connected_bonus)
            record.mark_seen(now)
        elif kind == "disconnected":
            record.reliability = max(0.0, record.reliability - policy.reliability_disconnect_penalty)
            record.online = False
        elif kind == "timeout":
            record.reliability = max(0.0, record.reliability - policy.reliability_disconnect_penalty)
            record.online = False
            record.timed_out = True
        elif kind == "latency":
            record.record_latency(value, now)
        else:
            logger.debug(f"[MONITOR] Unknown device metric: {kind}")
            return record

        self._check_reliability(record)
        return record

    def _check_reliability(self, record):
        """信頼性閾値の交差判定（下方向の交差ごとに1回のみ処理）"""
        threshold = self.policy.unreliable_threshold
        if record.reliability < threshold and not record.unreliable:
            record.unreliable = True
            self.handle_unreliable_device(record)
        elif record.reliability >= threshold and record.unreliable:
            record.unreliable = False
            logger.info(f"[MONITOR] Device {record.device_id} reliability recovered "
                        f"({record.reliability:.0f})")

    def handle_unreliable_device(self, record):
        """信頼性低下デバイス処理"""
        logger.warning(f"[MONITOR] Unreliable device detected: {record.device_id} "
                       f"(reliability {record.reliability:.0f}, errors {record.error_count})")
        self._notify("warning", f"Device {record.host} showing reliability issues", {
            "host": record.host,
            "reliability": record.reliability,
            "errors": record.error_count,
        })
        self._trigger("unreliable_device", {
            "host": record.host,
            "reliability": record.reliability,
        })

    def assess_device_reliability(self):
        """無応答デバイスのオフライン判定・タイムアウト処理・削除"""
        now = self.clock()
        for record in self.registry.all():
            if record.last_seen is None:
                continue
            silence = now - record.last_seen
            if silence > self.monitoring.device_offline_after:
                record.online = False
            if silence > self.monitoring.device_timeout_after and not record.timed_out:
                logger.warning(f"[MONITOR] Device timeout detected: {record.device_id} "
                               f"({silence / 60:.0f} min)")
                self.update_device_metrics(record.device_id, "timeout", silence)

        self.registry.evict_silent(now, self.monitoring.device_silence_window)

        devices = self.registry.all()
        self._sensor("devices_total", len(devices))
        self._sensor("devices_online", sum(1 for r in devices if r.online))

    # =========================================================================
    # ネットワーク
    # =========================================================================

    def collect_network_samples(self, probe=tcp_probe, timeout=None):
        """登録デバイスへの接続時間測定（メトリクスは変更しない）

        戻り値: [(device_id, latency_ms または None, error)]
        """
        timeout = timeout or self.config.basic.timeout
        samples = []
        for record in self.registry.all():
            try:
                samples.append((record.device_id, probe(record.host, record.port, timeout), None))
            except DeviceCommunicationError as e:
                samples.append((record.device_id, None, str(e)))
        return samples

    def apply_network_samples(self, samples):
        """測定結果をデバイスメトリクス・ネットワーク品質へ反映"""
        latencies = []
        failures = 0
        for device_id, latency, error in samples:
            if latency is None:
                failures += 1
                self.update_device_metrics(device_id, "error", error)
            else:
                latencies.append(latency)
                self.update_device_metrics(device_id, "latency", latency)

        if not latencies:
            return None

        jitter = 0.0
        if len(latencies) > 1:
            jitter = sum(abs(b - a) for a, b in zip(latencies, latencies[1:])) / (len(latencies) - 1)
        loss = failures / (len(latencies) + failures) * 100.0
        return self.record_network_latency(sum(latencies) / len(latencies), jitter, loss)

    def measure_network_latency(self, probe=tcp_probe, timeout=None):
        """登録デバイスへの接続時間からネットワーク遅延を測定"""
        return self.apply_network_samples(self.collect_network_samples(probe, timeout))

    def record_network_latency(self, latency_ms, jitter_ms=0.0, loss_percent=0.0):
        """ネットワーク遅延記録と品質分類"""
        now = self.clock()
        quality = classify_network_quality(latency_ms, jitter_ms, loss_percent, self.config.quality)
        self._replace_snapshot(network_latency_ms=latency_ms, network_quality=quality)
        self.network_history.append((now, latency_ms))

        self._sensor("network_latency", round(latency_ms, 1))
        self._sensor("network_quality", quality.value)

        if latency_ms > self.monitoring.latency_threshold:
            logger.warning(f"[MONITOR] High network latency detected: {latency_ms:.0f}ms")
            self._notify("warning", f"High network latency detected: {latency_ms:.0f}ms", {
                "latency": latency_ms,
                "threshold": self.monitoring.latency_threshold,
            })
            self._trigger("high_latency", {"latency": latency_ms})
        elif quality == NetworkQuality.POOR:
            self._trigger("poor_network", {"latency": latency_ms, "quality": quality.value})

        self.analyze_network_trends(now)
        return quality

    def analyze_network_trends(self, now=None):
        """直近5分の遅延変動からネットワーク不安定を検出"""
        now = self.clock() if now is None else now
        recent = [latency for ts, latency in self.network_history
                  if now - ts < NETWORK_TREND_WINDOW]
        if len(recent) < 3:
            return None

        variance = max(recent) - min(recent)
        average = sum(recent) / len(recent)
        if variance > NETWORK_INSTABILITY_VARIANCE:
            logger.warning(f"[MONITOR] Network instability detected "
                           f"(avg {average:.0f}ms, variance {variance:.0f}ms)")
            self._notify("warning", "Network instability detected", {
                "avg_latency": round(average),
                "variance": round(variance),
            })
        return {"average": average, "variance": variance}

    # =========================================================================
    # アラート
    # =========================================================================

    def check_resource_alerts(self, cpu, memory_percent, now=None):
        now = self.clock() if now is None else now
        if cpu > self.monitoring.cpu_alert_threshold:
            self.handle_resource_alert("cpu", cpu, self.monitoring.cpu_alert_threshold, now)
        if memory_percent > self.monitoring.memory_alert_threshold:
            self.handle_resource_alert("memory", memory_percent,
                                       self.monitoring.memory_alert_threshold, now)

    def handle_resource_alert(self, resource, value, threshold, now):
        """リソースアラート（5分以内の重複は抑制）"""
        if any(now - alert["timestamp"] < ALERT_DEDUP_WINDOW for alert in self.alerts[resource]):
            return None

        alert = {
            "type": resource,
            "value": value,
            "threshold": threshold,
            "timestamp": now,
            "level": "critical" if value > threshold * 1.2 else "warning",
        }
        self.alerts[resource].append(alert)
        logger.warning(f"[MONITOR] {resource.upper()} alert triggered: "
                       f"{value:.1f}% ({alert['level']})")
        self._notify(alert["level"], f"High {resource} usage: {value:.1f}%", {
            "resource": resource,
            "value": value,
            "threshold": threshold,
        })
        return alert

    def get_active_alerts(self, now=None):
        now = self.clock() if now is None else now
        active = [alert for alerts in self.alerts.values() for alert in alerts
                  if now - alert["timestamp"] < ALERT_DEDUP_WINDOW]
        return sorted(active, key=lambda a: a["timestamp"], reverse=True)

    # =========================================================================
    # 性能評価
    # =========================================================================

    def identify_performance_issues(self, snapshot=None):
        """現在のスナップショットから性能問題を抽出（重大度順）"""
        snapshot = snapshot or self.snapshot
        issues = []

        if snapshot.cpu_percent > 80:
            issues.append(PerformanceIssue("high_cpu", Severity.HIGH, snapshot.cpu_percent))
        if snapshot.memory_percent > 85:
            issues.append(PerformanceIssue("high_memory", Severity.HIGH, snapshot.memory_percent))
        if snapshot.dropout_count > self.monitoring.dropout_threshold:
            issues.append(PerformanceIssue("audio_dropouts", Severity.MEDIUM, snapshot.dropout_count))
        if snapshot.audio_quality_score < LOW_AUDIO_QUALITY:
            issues.append(PerformanceIssue("low_audio_quality", Severity.MEDIUM,
                                           snapshot.audio_quality_score))
        if snapshot.network_quality == NetworkQuality.POOR:
            issues.append(PerformanceIssue("poor_network", Severity.MEDIUM,
                                           snapshot.network_latency_ms))

        unreliable = [r for r in self.registry.all() if r.reliability < UNRELIABLE_ISSUE_THRESHOLD]
        if unreliable:
            issues.append(PerformanceIssue("unreliable_devices", Severity.LOW, len(unreliable)))

        return sorted(issues, key=lambda issue: issue.severity.rank, reverse=True)

    @staticmethod
    def calculate_overall_performance_score(cpu, memory, audio_quality, network_quality,
                                            device_reliability=None, weights=None,
                                            tier_scores=None):
        """加重合計による総合性能スコア [0, 100]"""
        policy = TuningPolicy()
        weights = weights or policy.score_weights
        tier_scores = tier_scores or policy.network_tier_scores
        if isinstance(network_quality, NetworkQuality):
            network_quality = network_quality.value
        network_score = tier_scores.get(network_quality, tier_scores["unknown"])
        reliability = 100.0 if device_reliability is None else device_reliability

        score = (
            weights["cpu"] * (100.0 - cpu) +
            weights["memory"] * (100.0 - memory) +
            weights["audio"] * audio_quality +
            weights["network"] * network_score +
            weights["devices"] * reliability
        )
        return max(0.0, min(100.0, score))

    def current_score(self):
        snapshot = self.snapshot
        return self.calculate_overall_performance_score(
            snapshot.cpu_percent,
            snapshot.memory_percent,
            snapshot.audio_quality_score,
            snapshot.network_quality,
            self.registry.mean_reliability(),
            self.policy.score_weights,
            self.policy.network_tier_scores,
        )

    def assess_performance(self):
        """定期性能評価（スコア低下時はlow_performance調整を要求）"""
        score = self.current_score()
        self.overall_score = score
        self.score_history.append((self.clock(), score))
        self._sensor("performance_score", round(score, 1))

        issues = []
        if score < LOW_PERFORMANCE_SCORE:
            issues = self.identify_performance_issues()
            logger.info(f"[MONITOR] Performance score low ({score:.0f}), "
                        f"{len(issues)} issue(s) detected")
            if issues:
                self._trigger("low_performance", {
                    "score": score,
                    "issues": [issue.type for issue in issues],
                    "dropouts": self.snapshot.dropout_count,
                })
        self.analyze_performance_trends()
        return score, issues

    def analyze_performance_trends(self):
        """CPU・ドロップアウト・遅延の増加傾向を検出"""
        trends = {
            "cpu": calculate_trend(v for _, v in self.cpu_history),
            "memory": calculate_trend(v for _, v in self.memory_history),
            "network": calculate_trend(v for _, v in self.network_history),
        }
        dropouts = [event for _, event, _ in self.audio_history]
        cumulative = []
        count = 0
        for event in dropouts[-TREND_SAMPLES:]:
            if event == "dropout":
                count += 1
            cumulative.append(count)
        trends["dropouts"] = calculate_trend(cumulative)

        if trends["cpu"] > 10:
            logger.warning(f"[MONITOR] Increasing CPU usage trend detected ({trends['cpu']:.1f})")
        if trends["dropouts"] > 2:
            logger.warning(f"[MONITOR] Increasing audio dropout trend detected "
                           f"({trends['dropouts']:.1f})")
        if trends["network"] > 50:
            logger.warning(f"[MONITOR] Increasing network latency trend detected "
                           f"({trends['network']:.1f})")
        return trends

    # =========================================================================
    # レポート
    # =========================================================================

    @staticmethod
    def _average(history, window=None, now=None):
        values = [v for ts, v in history if window is None or now - ts < window]
        return sum(values) / len(values) if values else 0.0

    def get_metrics(self):
        """メトリクス取得（平均・ピーク付き）"""
        cpu_values = [v for _, v in self.cpu_history]
        memory_values = [v for _, v in self.memory_history]
        return {
            "snapshot": self.snapshot.to_dict(),
            "cpu": {
                "current": self.snapshot.cpu_percent,
                "average": self._average(self.cpu_history),
                "peak": max(cpu_values) if cpu_values else 0.0,
            },
            "memory": {
                "current": self.snapshot.memory_percent,
                "average": self._average(self.memory_history),
                "peak": max(memory_values) if memory_values else 0.0,
            },
            "audio": {
                "quality_score": self.snapshot.audio_quality_score,
                "dropouts": self.snapshot.dropout_count,
                "underruns": self.underruns,
                "overruns": self.overruns,
            },
            "network": {
                "quality": self.snapshot.network_quality.value,
                "latency_ms": self.snapshot.network_latency_ms,
            },
            "overall_score": self.overall_score,
            "uptime": self.clock() - self.start_time,
        }

    def device_report(self):
        devices = self.registry.all()
        reliability = self.registry.mean_reliability()
        return {
            "average": round(reliability) if reliability is not None else 100,
            "count": len(devices),
            "online": sum(1 for r in devices if r.online),
            "devices": [r.to_dict() for r in devices],
        }

    def performance_report(self, window=3600.0, tuning_history=None):
        """期間レポート（既定は直近1時間）"""
        now = self.clock()
        dropouts = sum(1 for ts, event, _ in self.audio_history
                       if event == "dropout" and now - ts < window)
        return {
            "timestamp": time.time(),
            "window": window,
            "performance": {
                "average_cpu": self._average(self.cpu_history, window, now),
                "average_memory": self._average(self.memory_history, window, now),
                "audio_dropouts": dropouts,
                "average_latency": self._average(self.network_history, window, now),
                "overall_score": self.overall_score,
                "average_score": self._average(self.score_history, window, now),
            },
            "devices": self.device_report(),
            "trends": self.analyze_performance_trends(),
            "optimizations": [d.to_dict() for d in (tuning_history or [])
                              if now - d.timestamp < window],
            "recommendations": self.generate_recommendations(),
        }

    def generate_recommendations(self):
        """改善推奨事項"""
        recommendations = []
        if self._average(self.cpu_history) > 70:
            recommendations.append({
                "type": "cpu",
                "priority": "high",
                "recommendation": "Consider reducing the number of worker threads "
                                  "or optimizing buffer settings",
                "impact": "Reduce CPU usage by 10-20%",
            })
        if self.snapshot.dropout_count > 10:
            recommendations.append({
                "type": "audio",
                "priority": "medium",
                "recommendation": "Increase buffer sizes to reduce audio dropouts",
                "impact": "Improve audio quality by reducing dropouts",
            })
        if self.snapshot.network_quality == NetworkQuality.POOR:
            recommendations.append({
                "type": "network",
                "priority": "medium",
                "recommendation": "Check network configuration and consider "
                                  "increasing timeout values",
                "impact": "Improve device connectivity and reduce timeouts",
            })
        return recommendations

    def dashboard_data(self):
        """ダッシュボード用データ"""
        devices = self.registry.all()
        reliability = self.registry.mean_reliability()
        return {
            "performance": {
                "score": round(self.overall_score, 1),
                "cpu": self.snapshot.cpu_percent,
                "memory": self.snapshot.memory_percent,
                "audio_quality": self.snapshot.audio_quality_score,
                "network_quality": self.snapshot.network_quality.value,
            },
            "devices": {
                "total": len(devices),
                "online": sum(1 for r in devices if r.online),
                "reliability": reliability if reliability is not None else 100.0,
            },
            "buffer": self.buffer_manager.get_status(),
            "alerts": self.get_active_alerts(),
            "trends": {
                "cpu": calculate_trend(v for _, v in list(self.cpu_history)[-20:]),
                "network": calculate_trend(v for _, v in list(self.network_history)[-20:]),
            },
        }

    def publish_dashboard(self):
        if self.event_stream:
            self.event_stream.publish("dashboard_update", self.dashboard_data())

    def is_healthy(self):
        return self.overall_score >= LOW_PERFORMANCE_SCORE
