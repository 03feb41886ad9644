"""
適応バッファ管理モジュール
アンダーラン/オーバーラン回数に応じてライブバッファサイズ(ms)を増減する
"""

import logging
import threading
import time

from .config import *
from .models import BufferState

logger = logging.getLogger(__name__)


class AdaptiveBufferManager:
    """適応バッファ管理クラス

    調整はクールダウン期間内に高々1回。クールダウン中の調整要求は
    カウンタをリセットせず、期間経過後にまとめて反映される。
    """

    def __init__(self, settings: AudioSettings = None, clock=time.monotonic):
        settings = settings or AudioSettings()
        self.clock = clock
        self.step = settings.buffer_step
        self.underrun_threshold = settings.underrun_threshold
        self.overrun_threshold = settings.overrun_threshold
        self.enabled = settings.adaptive_buffering

        min_size, max_size = self._normalize_bounds(settings.min_buffer_size,
                                                    settings.max_buffer_size)
        self.state = BufferState(
            current_size=min_size,
            min_size=min_size,
            max_size=max_size,
            cooldown=settings.adjustment_cooldown,
        )
        self.listeners = []
        self.lock = threading.Lock()

    @staticmethod
    def _normalize_bounds(min_size, max_size):
        """min>maxは入れ替え、ハード上限/下限へクランプ"""
        if min_size > max_size:
            min_size, max_size = max_size, min_size
        min_size = int(max(BUFFER_LIMIT_MIN_MS, min(min_size, BUFFER_LIMIT_MAX_MS)))
        max_size = int(max(BUFFER_LIMIT_MIN_MS, min(max_size, BUFFER_LIMIT_MAX_MS)))
        return min_size, max_size

    def add_listener(self, callback):
        """サイズ変更通知コールバック登録 callback(new_size, old_size)"""
        self.listeners.append(callback)

    def _notify(self, new_size, old_size):
        for callback in list(self.listeners):
            try:
                callback(new_size, old_size)
            except Exception as e:
                logger.error(f"[BUFFER] Listener error: {e}")

    def record_underrun(self, count=1):
        """アンダーラン記録"""
        with self.lock:
            self.state.underrun_count += count

    def record_overrun(self, count=1):
        """オーバーラン記録"""
        with self.lock:
            self.state.overrun_count += count

    def in_cooldown(self):
        last = self.state.last_adjustment
        return last is not None and self.clock() - last < self.state.cooldown

    def adjust(self):
        """バッファ調整実行（変更時は新サイズ、変更なしはNone）"""
        with self.lock:
            if not self.enabled:
                return None
            if self.in_cooldown():
                return None

            state = self.state
            old_size = state.current_size

            if state.underrun_count > self.underrun_threshold and state.current_size < state.max_size:
                state.current_size = min(state.current_size + self.step, state.max_size)
                state.underrun_count = 0
                reason = "underruns"
            elif state.overrun_count > self.overrun_threshold and state.current_size > state.min_size:
                state.current_size = max(state.current_size - self.step, state.min_size)
                state.overrun_count = 0
                reason = "overruns"
            else:
                return None

            state.last_adjustment = self.clock()
            new_size = state.current_size

        logger.info(f"[BUFFER] Buffer adjusted {old_size}ms -> {new_size}ms ({reason})")
        self._notify(new_size, old_size)
        return new_size

    def set_bounds(self, min_size, max_size):
        """バッファ範囲設定（現在サイズは新範囲へクランプ）"""
        min_size, max_size = self._normalize_bounds(min_size, max_size)
        with self.lock:
            state = self.state
            old_size = state.current_size
            state.min_size = min_size
            state.max_size = max_size
            state.current_size = max(min_size, min(state.current_size, max_size))
            new_size = state.current_size

        logger.info(f"[BUFFER] Buffer bounds set to {min_size}-{max_size}ms")
        if new_size != old_size:
            self._notify(new_size, old_size)
        return min_size, max_size

    def enable(self):
        self.enabled = True
        logger.info("[BUFFER] Adaptive buffering enabled")

    def disable(self):
        """適応調整停止（カウンタは継続して蓄積）"""
        self.enabled = False
        logger.info("[BUFFER] Adaptive buffering disabled")

    def reset_counters(self):
        with self.lock:
            self.state.underrun_count = 0
            self.state.overrun_count = 0

    @property
    def current_size(self):
        return self.state.current_size

    def get_status(self):
        """状態取得"""
        with self.lock:
            status = self.state.to_dict()
        status["enabled"] = self.enabled
        status["in_cooldown"] = self.in_cooldown()
        return status
