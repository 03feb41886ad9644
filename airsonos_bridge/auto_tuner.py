"""
自動調整モジュール
検出条件から最適化デルタ（絶対目標値）を算出し、検証後にライブ設定へ適用する
"""

import logging
import threading
import time
from collections import deque

from .config import *
from .errors import ConfigurationError, TuningApplicationError
from .models import OptimizationDelta, TuningDecision

logger = logging.getLogger(__name__)

# 最適化デルタ種別
REDUCE_WORKERS = "reduce_workers"
REDUCE_BUFFER_COMPLEXITY = "reduce_buffer_complexity"
INCREASE_BUFFER = "increase_buffer"
INCREASE_BUFFER_AGGRESSIVELY = "increase_buffer_aggressively"
REDUCE_HEALTH_CHECK_FREQUENCY = "reduce_health_check_frequency"
INCREASE_DEVICE_TIMEOUT = "increase_device_timeout"
SET_BUFFER_BOUNDS = "set_buffer_bounds"
APPLY_RECOMMENDED_BUFFER = "apply_recommended_buffer"
SET_DEVICE_TIMEOUT = "set_device_timeout"

DELTA_TYPES = {
    REDUCE_WORKERS: ("max_workers",),
    REDUCE_BUFFER_COMPLEXITY: ("adaptive_buffering",),
    INCREASE_BUFFER: ("min_buffer_size", "max_buffer_size"),
    INCREASE_BUFFER_AGGRESSIVELY: ("min_buffer_size", "max_buffer_size"),
    REDUCE_HEALTH_CHECK_FREQUENCY: ("health_check_interval",),
    INCREASE_DEVICE_TIMEOUT: ("timeout",),
    SET_BUFFER_BOUNDS: ("min_buffer_size", "max_buffer_size"),
    APPLY_RECOMMENDED_BUFFER: ("min_buffer_size", "max_buffer_size"),
    SET_DEVICE_TIMEOUT: ("timeout",),
}

# 性能問題 → 調整条件
ISSUE_CONDITIONS = {
    "high_cpu": "high_cpu",
    "high_memory": "high_memory",
    "audio_dropouts": "audio_dropouts",
    "low_audio_quality": "audio_quality",
    "poor_network": "poor_network",
    "unreliable_devices": "unreliable_device",
}

MAX_HEALTH_CHECK_INTERVAL = 60.0
MAX_DEVICE_TIMEOUT = 15
AUDIO_QUALITY_THRESHOLD = 70
AUDIO_QUALITY_DROPOUTS = 5

# 診断結果の品質ティア → デバイスタイムアウト(秒)
DIAGNOSTIC_TIMEOUTS = {
    "excellent": 3,
    "good": 5,
    "fair": 8,
    "poor": 8,
}


class AutoTuner:
    """自動調整クラス

    クールダウンはバッファ管理のものとは独立。成功した自動調整のみが
    クールダウンを開始する。
    """

    def __init__(self, runtime, buffer_manager, worker_pool=None, config=None,
                 clock=time.monotonic, event_stream=None):
        config = config or BridgeConfig()
        self.config = config
        self.runtime = runtime
        self.buffer_manager = buffer_manager
        self.worker_pool = worker_pool
        self.policy = config.tuning
        self.monitoring = config.monitoring
        self.clock = clock
        self.event_stream = event_stream

        self.history = deque(maxlen=self.policy.decision_history_size)
        self.last_auto_tuning = None
        self.paused = False
        self.listeners = []
        self.lock = threading.RLock()

    def add_listener(self, callback):
        """ライブ設定変更通知 callback(runtime)"""
        self.listeners.append(callback)

    def pause(self):
        self.paused = True
        logger.info("[TUNER] Auto-tuning paused")
        if self.event_stream:
            self.event_stream.update_sensor("auto_tuning", "paused")

    def resume(self):
        self.paused = False
        logger.info("[TUNER] Auto-tuning resumed")
        if self.event_stream:
            self.event_stream.update_sensor("auto_tuning", "active")

    def cooldown_remaining(self, now=None):
        if self.last_auto_tuning is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, self.policy.tuning_cooldown - (now - self.last_auto_tuning))

    # =========================================================================
    # 判定・算出
    # =========================================================================

    def should_trigger_auto_tuning(self, condition, context=None):
        """自動調整を実行すべきか判定"""
        context = context or {}
        if self.paused:
            return False
        if self.cooldown_remaining() > 0:
            return False

        if condition == "high_cpu" and "cpu" in context:
            return context["cpu"] > self.monitoring.cpu_alert_threshold
        if condition == "high_memory" and "memory" in context:
            return context["memory"] > self.monitoring.memory_alert_threshold
        if condition == "high_latency" and "latency" in context:
            return context["latency"] > self.monitoring.latency_threshold
        if condition == "audio_quality" and "quality_score" in context:
            return context["quality_score"] < AUDIO_QUALITY_THRESHOLD
        return True

    def calculate_optimizations(self, condition, context=None):
        """条件に応じた最適化デルタ一覧（副作用なし）"""
        context = context or {}
        current = self.runtime
        deltas = []

        if condition in ("high_cpu", "high_memory"):
            if current.enable_worker_threads and current.max_workers > 1:
                deltas.append(OptimizationDelta.create(
                    REDUCE_WORKERS, max_workers=max(1, current.max_workers - 1)))
            if condition == "high_cpu" and current.adaptive_buffering:
                deltas.append(OptimizationDelta.create(
                    REDUCE_BUFFER_COMPLEXITY, adaptive_buffering=False))

        elif condition == "high_latency":
            deltas.append(self._buffer_delta(INCREASE_BUFFER, 50, 600, 100, 1000))
            deltas.append(OptimizationDelta.create(
                REDUCE_HEALTH_CHECK_FREQUENCY,
                health_check_interval=max(current.health_check_interval,
                                          min(current.health_check_interval * 1.5,
                                              MAX_HEALTH_CHECK_INTERVAL))))

        elif condition == "audio_quality":
            if context.get("dropouts", 0) > AUDIO_QUALITY_DROPOUTS:
                new_min = max(current.min_buffer_size, min(current.min_buffer_size + 100, 800))
                deltas.append(OptimizationDelta.create(
                    INCREASE_BUFFER_AGGRESSIVELY,
                    min_buffer_size=new_min,
                    max_buffer_size=max(current.max_buffer_size, new_min)))

        elif condition == "audio_dropouts":
            deltas.append(self._buffer_delta(INCREASE_BUFFER, 50, 1000, 100, 2000))

        elif condition == "poor_network":
            deltas.append(self._buffer_delta(INCREASE_BUFFER, 75, 800, 150, 2000))

        elif condition == "unreliable_device":
            deltas.append(OptimizationDelta.create(
                INCREASE_DEVICE_TIMEOUT,
                timeout=max(current.timeout, min(current.timeout + 2, MAX_DEVICE_TIMEOUT))))

        elif condition == "low_performance":
            seen = set()
            for issue in context.get("issues", []):
                issue_type = getattr(issue, "type", issue)
                sub_condition = ISSUE_CONDITIONS.get(issue_type)
                if sub_condition is None:
                    continue
                sub_context = dict(context)
                sub_context.setdefault("dropouts", getattr(issue, "value", 0) or 0)
                for delta in self.calculate_optimizations(sub_condition, sub_context):
                    if delta.type not in seen:
                        seen.add(delta.type)
                        deltas.append(delta)

        return deltas

    def _buffer_delta(self, delta_type, min_step, min_cap, max_step, max_cap):
        current = self.runtime
        # 上限を超えている現在値は下げない
        new_min = max(current.min_buffer_size, min(current.min_buffer_size + min_step, min_cap))
        new_max = max(current.max_buffer_size, min(current.max_buffer_size + max_step, max_cap))
        return OptimizationDelta.create(delta_type, min_buffer_size=new_min,
                                        max_buffer_size=max(new_max, new_min))

    # =========================================================================
    # 適用
    # =========================================================================

    def _apply_to(self, candidate, delta):
        """デルタを候補設定へ反映し、設定入力と同じ規則で検証"""
        keys = DELTA_TYPES.get(delta.type)
        if keys is None:
            raise TuningApplicationError(delta, "unknown optimization type")

        values = dict(delta.values)
        missing = [key for key in keys if key not in values]
        if missing:
            raise TuningApplicationError(delta, f"missing values: {', '.join(missing)}")
        for key in keys:
            setattr(candidate, key, values[key])

        try:
            check_buffer_bounds(candidate.min_buffer_size, candidate.max_buffer_size)
            check_timeout(candidate.timeout)
        except ConfigurationError as e:
            raise TuningApplicationError(delta, str(e))

        workers = candidate.max_workers
        if isinstance(workers, bool) or not isinstance(workers, int) \
                or not 1 <= workers <= candidate.worker_ceiling:
            raise TuningApplicationError(
                delta, f"max_workers {workers!r} outside 1-{candidate.worker_ceiling}")
        if not isinstance(candidate.adaptive_buffering, bool):
            raise TuningApplicationError(delta, "adaptive_buffering must be boolean")
        interval = candidate.health_check_interval
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            raise TuningApplicationError(delta, f"invalid health_check_interval {interval!r}")

    def _commit(self, candidate, deltas):
        """検証済み設定をライブ設定・各サブシステムへ反映（失敗時は元に戻す）"""
        previous = self.runtime.snapshot()
        try:
            self.runtime.restore(candidate)
            self._push_to_subsystems()
        except Exception as e:
            self.runtime.restore(previous)
            self._push_to_subsystems()
            raise TuningApplicationError(deltas[0] if deltas else "commit", str(e))

        for callback in list(self.listeners):
            try:
                callback(self.runtime)
            except Exception as e:
                logger.error(f"[TUNER] Listener error: {e}")

    def _push_to_subsystems(self):
        runtime = self.runtime
        self.buffer_manager.set_bounds(runtime.min_buffer_size, runtime.max_buffer_size)
        if runtime.adaptive_buffering and not self.buffer_manager.enabled:
            self.buffer_manager.enable()
        elif not runtime.adaptive_buffering and self.buffer_manager.enabled:
            self.buffer_manager.disable()
        if self.worker_pool and self.worker_pool.workers > runtime.max_workers:
            self.worker_pool.resize(runtime.max_workers)

    def apply_optimization(self, delta):
        """単一デルタ適用（冪等、失敗時はTuningApplicationError）"""
        with self.lock:
            candidate = self.runtime.snapshot()
            self._apply_to(candidate, delta)
            self._commit(candidate, [delta])
        logger.info(f"[TUNER] Applied {delta.type}: {dict(delta.values)}")
        return self.runtime

    def _record(self, trigger, deltas, success, error=None):
        decision = TuningDecision(
            trigger=trigger,
            timestamp=self.clock(),
            deltas=tuple(deltas),
            success=success,
            error=error,
        )
        self.history.append(decision)
        return decision

    def trigger_auto_tuning(self, condition, context=None):
        """自動調整実行（適用しなかった場合はNone）"""
        if not self.should_trigger_auto_tuning(condition, context):
            return None

        deltas = self.calculate_optimizations(condition, context)
        if not deltas:
            return None

        logger.info(f"[TUNER] Triggering auto-tuning for {condition}: "
                    f"{', '.join(d.type for d in deltas)}")
        with self.lock:
            candidate = self.runtime.snapshot()
            try:
                for delta in deltas:
                    self._apply_to(candidate, delta)
                self._commit(candidate, deltas)
            except TuningApplicationError as e:
                logger.error(f"[TUNER] Auto-tuning failed for {condition}: {e}")
                decision = self._record(condition, deltas, False, str(e))
                if self.event_stream:
                    self.event_stream.notify("warning", f"Auto-tuning failed: {e}",
                                             {"reason": condition})
                return decision

            decision = self._record(condition, deltas, True)
            self.last_auto_tuning = decision.timestamp

        if self.event_stream:
            self.event_stream.notify(
                "info", f"Performance optimizations applied due to {condition}",
                {"optimization_count": len(deltas), "reason": condition})
            self.event_stream.update_sensor("last_tuning", condition)
        return decision

    def apply_configuration(self, trigger, delta):
        """自動構成・サービス要求による設定変更

        自動調整と同一の検証を行う。結果は判定履歴へ記録するが、
        クールダウンは開始しない。
        """
        try:
            self.apply_optimization(delta)
        except TuningApplicationError as e:
            self._record(trigger, [delta], False, str(e))
            raise
        return self._record(trigger, [delta], True)

    def apply_service_request(self, request, payload):
        """外部サービス呼び出しによる設定変更（自動調整と同一の検証）"""
        if request != "buffer_bounds":
            raise TuningApplicationError(request, "unsupported service request")

        delta = OptimizationDelta.create(
            SET_BUFFER_BOUNDS,
            min_buffer_size=payload.get("min_buffer_size", self.runtime.min_buffer_size),
            max_buffer_size=payload.get("max_buffer_size", self.runtime.max_buffer_size),
        )
        return self.apply_configuration(f"service:{request}", delta)

    def configure_from_capabilities(self, profile):
        """バッファ範囲が既定値のままならシステム能力の推奨範囲を適用"""
        audio = self.config.audio
        if (audio.min_buffer_size, audio.max_buffer_size) != (DEFAULT_MIN_BUFFER_MS,
                                                              DEFAULT_MAX_BUFFER_MS):
            return None
        if profile is None or not profile.recommended_buffer:
            return None
        low, high = profile.recommended_buffer
        if (low, high) == (self.runtime.min_buffer_size, self.runtime.max_buffer_size):
            return None

        delta = OptimizationDelta.create(APPLY_RECOMMENDED_BUFFER,
                                         min_buffer_size=low, max_buffer_size=high)
        try:
            decision = self.apply_configuration("auto_config:buffer", delta)
        except TuningApplicationError as e:
            logger.warning(f"[TUNER] Recommended buffer range not applied: {e}")
            return None
        logger.info(f"[TUNER] Buffer range auto-configured to {low}-{high}ms")
        return decision

    def configure_from_diagnostics(self, quality):
        """タイムアウトが既定値のままなら診断結果の品質ティアから設定"""
        timeout = DIAGNOSTIC_TIMEOUTS.get(quality)
        if timeout is None:
            return None
        if self.config.basic.timeout != DEFAULT_TIMEOUT or self.runtime.timeout != DEFAULT_TIMEOUT:
            return None
        if timeout == self.runtime.timeout:
            return None

        delta = OptimizationDelta.create(SET_DEVICE_TIMEOUT, timeout=timeout)
        try:
            decision = self.apply_configuration("auto_config:timeout", delta)
        except TuningApplicationError as e:
            logger.warning(f"[TUNER] Diagnostic timeout not applied: {e}")
            return None
        logger.info(f"[TUNER] Device timeout auto-configured to {timeout}s ({quality} network)")
        return decision

    def get_status(self):
        """状態取得"""
        return {
            "paused": self.paused,
            "cooldown_remaining": self.cooldown_remaining(),
            "runtime": self.runtime.to_dict(),
            "history": [decision.to_dict() for decision in list(self.history)[-10:]],
        }
