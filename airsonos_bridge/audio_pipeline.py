"""
音声パイプライン管理モジュール
デコード済みPCMフレームの循環バッファ（サイズはライブバッファ値から算出）と
アンダーラン/オーバーラン検出、ワーカーへの変換処理委譲
"""

import logging
import threading

from .config import *

logger = logging.getLogger(__name__)

FRAME_BYTES = AUDIO_CHANNELS * AUDIO_BYTES_PER_SAMPLE


def bytes_for_ms(ms, sample_rate=AUDIO_SAMPLE_RATE):
    """バッファ時間(ms)をバイト数へ変換（フレーム境界に揃える）"""
    frames = int(sample_rate * ms / 1000)
    return max(frames, 1) * FRAME_BYTES


class AudioFrameBuffer:
    """循環音声バッファクラス"""

    def __init__(self, buffer_size):
        self.buffer_size = buffer_size
        self.buffer = bytearray(buffer_size)
        self.write_pos = 0
        self.read_pos = 0
        self.used_size = 0
        self.lock = threading.Lock()
        self.initialized = False
        self.overflow_count = 0
        self.underrun_count = 0

    def initialize(self):
        """バッファ初期化"""
        try:
            self.write_pos = 0
            self.read_pos = 0
            self.used_size = 0
            self.initialized = True
            logger.info(f"[AUDIO] Buffer initialized: {self.buffer_size} bytes")
            return True
        except Exception as e:
            logger.error(f"[AUDIO] Buffer initialization failed: {e}")
            return False

    def write(self, data):
        """データ書き込み（溢れた分は古いデータを破棄）

        戻り値: (書き込みバイト数, 破棄バイト数)
        """
        with self.lock:
            if not self.initialized:
                return 0, 0

            if len(data) > self.buffer_size:
                data = data[-self.buffer_size:]

            data_len = len(data)
            available_space = self.buffer_size - self.used_size
            dropped = 0

            if data_len > available_space:
                # オーバーフロー処理：古いデータを破棄
                dropped = data_len - available_space
                self._advance_read_pos(dropped)
                self.overflow_count += 1
                logger.debug(f"[AUDIO] Buffer overflow, dropped {dropped} bytes")

            bytes_written = 0
            remaining = data_len

            while remaining > 0:
                chunk_size = min(remaining, self.buffer_size - self.write_pos)

                self.buffer[self.write_pos:self.write_pos + chunk_size] = \
                    data[bytes_written:bytes_written + chunk_size]

                self.write_pos = (self.write_pos + chunk_size) % self.buffer_size
                bytes_written += chunk_size
                remaining -= chunk_size

            self.used_size = min(self.used_size + bytes_written, self.buffer_size)
            return bytes_written, dropped

    def read(self, size):
        """データ読み出し"""
        with self.lock:
            if not self.initialized:
                return b''

            read_size = min(size, self.used_size)
            if read_size < size:
                self.underrun_count += 1
            if read_size == 0:
                return b''  # アンダーラン

            result = bytearray(read_size)
            bytes_read = 0

            while bytes_read < read_size:
                chunk_size = min(read_size - bytes_read,
                                 self.buffer_size - self.read_pos)

                result[bytes_read:bytes_read + chunk_size] = \
                    self.buffer[self.read_pos:self.read_pos + chunk_size]

                self.read_pos = (self.read_pos + chunk_size) % self.buffer_size
                bytes_read += chunk_size

            self.used_size -= read_size
            return bytes(result)

    def _advance_read_pos(self, size):
        """読み取り位置を進める（オーバーフロー用）"""
        advance_size = min(size, self.used_size)
        self.read_pos = (self.read_pos + advance_size) % self.buffer_size
        self.used_size -= advance_size

    def resize(self, new_size):
        """バッファサイズ変更（新しいデータを優先して保持）"""
        with self.lock:
            pending = bytearray(self.used_size)
            for i in range(self.used_size):
                pending[i] = self.buffer[(self.read_pos + i) % self.buffer_size]
            if len(pending) > new_size:
                pending = pending[-new_size:]

            self.buffer_size = new_size
            self.buffer = bytearray(new_size)
            self.buffer[:len(pending)] = pending
            self.read_pos = 0
            self.used_size = len(pending)
            self.write_pos = self.used_size % new_size

    def get_buffer_size(self):
        """バッファサイズ取得"""
        return self.buffer_size

    def get_used_size(self):
        """使用サイズ取得"""
        with self.lock:
            return self.used_size

    def get_free_size(self):
        """空きサイズ取得"""
        with self.lock:
            return self.buffer_size - self.used_size

    def is_empty(self):
        """空状態確認"""
        with self.lock:
            return self.used_size == 0

    def is_full(self):
        """満杯状態確認"""
        with self.lock:
            return self.used_size == self.buffer_size


class AudioPipeline:
    """AirPlay → Sonos 音声パイプライン管理クラス

    event_sinkにはイベント名とペイロードを受け取る呼び出し可能オブジェクトを渡す
    （通常は制御ループのキューへ投入する AirSonosBridge.post_event）。
    """

    def __init__(self, buffer_manager, worker_pool=None, event_sink=None, gain=1.0):
        self.buffer_manager = buffer_manager
        self.worker_pool = worker_pool
        self.event_sink = event_sink
        self.gain = gain
        self.frame_buffer = None
        self.streaming = False
        self.frames_pushed = 0
        self.frames_pulled = 0

    def initialize(self):
        """パイプライン初期化"""
        try:
            logger.info("[AUDIO] Initializing audio pipeline...")
            size_ms = self.buffer_manager.current_size
            self.frame_buffer = AudioFrameBuffer(bytes_for_ms(size_ms))
            if not self.frame_buffer.initialize():
                logger.error("[AUDIO] Buffer initialization failed")
                return False

            self.buffer_manager.add_listener(self._on_buffer_resized)
            logger.info(f"[AUDIO] Audio pipeline initialized ({size_ms}ms buffer)")
            return True

        except Exception as e:
            logger.error(f"[AUDIO] Pipeline initialization failed: {e}")
            return False

    def _on_buffer_resized(self, new_size, old_size):
        """バッファサイズ変更通知"""
        if self.frame_buffer:
            self.frame_buffer.resize(bytes_for_ms(new_size))
            logger.info(f"[AUDIO] Frame buffer resized {old_size}ms -> {new_size}ms")

    def _post(self, event_type, **payload):
        if self.event_sink:
            self.event_sink(event_type, payload)

    def push_frames(self, data, device=None):
        """デコード済みフレーム投入（溢れた場合はbuffer_overrunを通知）"""
        if not self.frame_buffer:
            return 0
        self.streaming = True
        written, dropped = self.frame_buffer.write(data)
        self.frames_pushed += written // FRAME_BYTES
        if dropped:
            self._post("buffer_overrun", device=device, dropped_bytes=dropped)
        return written

    def pull(self, size, device=None):
        """出力用フレーム取得（不足分は無音で補いbuffer_underrunを通知）"""
        if not self.frame_buffer:
            return b'\x00' * size
        data = self.frame_buffer.read(size)
        if len(data) < size:
            if self.streaming:
                self._post("buffer_underrun", device=device, missing_bytes=size - len(data))
            data += b'\x00' * (size - len(data))
        self.frames_pulled += len(data) // FRAME_BYTES
        return self.process(data)

    def process(self, data):
        """ゲイン変換（ワーカーへ委譲）"""
        if self.gain == 1.0 or not self.worker_pool:
            return data
        return self.worker_pool.process_gain(data, self.gain)

    def set_gain(self, gain):
        self.gain = max(0.0, float(gain))
        logger.info(f"[AUDIO] Gain set to {self.gain:.2f}")

    def stop_stream(self):
        self.streaming = False

    def get_audio_quality_metrics(self):
        """音声品質メトリクス取得"""
        if not self.frame_buffer:
            return {"buffer_ms": 0, "buffer_level": 0.0, "latency_ms": 0.0}
        used = self.frame_buffer.get_used_size()
        total = self.frame_buffer.get_buffer_size()
        bytes_per_second = AUDIO_SAMPLE_RATE * FRAME_BYTES
        return {
            "sample_rate": AUDIO_SAMPLE_RATE,
            "buffer_ms": self.buffer_manager.current_size,
            "buffer_level": used / total * 100 if total else 0.0,
            "latency_ms": used / bytes_per_second * 1000,
            "overflows": self.frame_buffer.overflow_count,
            "underruns": self.frame_buffer.underrun_count,
        }

    def is_healthy(self):
        """健全性確認"""
        return (
            self.frame_buffer is not None and
            self.frame_buffer.initialized and
            (self.worker_pool is None or self.worker_pool.is_healthy())
        )

    def attempt_recovery(self):
        """復旧処理"""
        try:
            logger.info("[AUDIO] Attempting audio pipeline recovery...")
            if self.worker_pool is not None and not self.worker_pool.attempt_recovery():
                logger.error("[AUDIO] Worker pool recovery failed")
                return False
            if self.frame_buffer is None:
                return self.initialize()
            return self.frame_buffer.initialize()
        except Exception as e:
            logger.error(f"[AUDIO] Recovery failed: {e}")
            return False

    def cleanup(self):
        """リソース解放"""
        logger.info("[AUDIO] Cleaning up audio pipeline...")
        self.streaming = False
        if self.frame_buffer:
            self.frame_buffer.initialized = False
