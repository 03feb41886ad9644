"""
ワーカープール管理モジュール
CPU・メモリ余裕からワーカー数を算出し、PCM変換処理をプロセスプールへ委譲する
"""

import logging
import os
import threading
from array import array
from concurrent.futures import Future, ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool

import psutil

from .config import *
from .models import SystemCapabilityProfile

logger = logging.getLogger(__name__)

GB = 1024 ** 3


def recommended_buffer_range(total_memory):
    """総メモリ量から推奨バッファ範囲(ms)を算出"""
    memory_gb = total_memory / GB
    if memory_gb < 0.5:
        return (100, 250)
    elif memory_gb < 1:
        return (150, 350)
    elif memory_gb < 2:
        return (200, 500)
    return (250, 750)


def compute_optimal_workers(profile: SystemCapabilityProfile, ceiling=WORKER_CEILING) -> int:
    """最適ワーカー数算出

    ワーカー非対応は0。それ以外は(コア数-1)から開始し、メモリ使用率が
    高い場合は半減、上限でキャップ。空きコアがあれば最低1。
    """
    if not profile.supports_workers:
        return 0

    workers = profile.cpu_cores - 1
    if profile.memory_usage_ratio > MEMORY_PRESSURE_RATIO:
        workers //= 2
    workers = min(workers, ceiling)
    if profile.cpu_cores > 1:
        workers = max(workers, 1)
    return max(workers, 0)


def _supports_process_workers():
    """プロセスプール利用可否（セマフォ非対応プラットフォームは不可）"""
    try:
        import multiprocessing.synchronize  # noqa: F401
        return True
    except ImportError:
        return False


def detect_capabilities(enable_workers=True, ceiling=WORKER_CEILING) -> SystemCapabilityProfile:
    """システム能力プロファイル検出"""
    memory = psutil.virtual_memory()
    cores = psutil.cpu_count(logical=True) or os.cpu_count() or 1

    profile = SystemCapabilityProfile(
        cpu_cores=cores,
        total_memory=memory.total,
        available_memory=memory.available,
        memory_usage_ratio=(memory.total - memory.available) / memory.total if memory.total else 0.0,
        supports_workers=enable_workers and _supports_process_workers(),
        recommended_buffer=recommended_buffer_range(memory.total),
    )
    profile.recommended_workers = compute_optimal_workers(profile, ceiling)

    logger.info(f"[WORKERS] System capabilities: {cores} cores, "
                f"{memory.total // 1024 // 1024}MB memory "
                f"({profile.memory_usage_ratio:.0%} used), "
                f"{profile.recommended_workers} worker(s) recommended")
    return profile


def apply_gain(pcm, gain):
    """16bit PCMへゲイン適用（ワーカープロセスで実行）"""
    samples = array("h")
    samples.frombytes(pcm[:len(pcm) - len(pcm) % 2])
    for i, value in enumerate(samples):
        scaled = int(value * gain)
        if scaled > 32767:
            scaled = 32767
        elif scaled < -32768:
            scaled = -32768
        samples[i] = scaled
    return samples.tobytes()


class AudioWorkerPool:
    """リサイズ可能な音声処理ワーカープール

    ワーカープロセスが異常終了した場合はプールを破損扱いとし、
    同じワーカー数で再構築する。再構築までの処理はインラインで実行する。
    """

    def __init__(self, workers=0):
        self.workers = 0
        self.executor = None
        self.broken = False
        self.restarts = 0
        self.lock = threading.Lock()
        self.tasks_completed = 0
        self.resize(workers)

    def resize(self, workers):
        """ワーカー数変更（0はインライン処理）"""
        workers = max(int(workers), 0)
        with self.lock:
            if workers == self.workers and (workers == 0 or self.executor):
                return self.workers
            old_executor = self.executor
            self.executor = ProcessPoolExecutor(max_workers=workers) if workers > 0 else None
            previous = self.workers
            self.workers = workers
            self.broken = False

        if old_executor is not None:
            old_executor.shutdown(wait=False)
        logger.info(f"[WORKERS] Worker pool resized {previous} -> {workers}")
        return workers

    def _handle_broken_pool(self, error):
        """ワーカー異常終了時の処理（破損扱いにして再構築を試行）"""
        with self.lock:
            if self.broken:
                return
            self.broken = True
            old_executor = self.executor
            self.executor = None
        logger.error(f"[WORKERS] Worker process exited unexpectedly: {error}")
        if old_executor is not None:
            old_executor.shutdown(wait=False)
        self.restart()

    def restart(self):
        """同じワーカー数でプールを再構築"""
        with self.lock:
            workers = self.workers
            self.executor = None
            self.workers = 0
        try:
            self.resize(workers)
        except Exception as e:
            with self.lock:
                self.workers = workers
                self.broken = True
            logger.error(f"[WORKERS] Worker pool restart failed: {e}")
            return False
        self.restarts += 1
        logger.info(f"[WORKERS] Worker pool restarted with {workers} worker(s)")
        return True

    def _run_inline(self, func, *args):
        future = Future()
        try:
            future.set_result(func(*args))
        except Exception as e:
            future.set_exception(e)
        return future

    def submit(self, func, *args):
        """処理投入（ワーカーなし・破損時は同期実行した完了済みFutureを返す）"""
        with self.lock:
            executor = None if self.broken else self.executor
        future = None
        if executor is not None:
            try:
                future = executor.submit(func, *args)
            except BrokenProcessPool as e:
                self._handle_broken_pool(e)
        if future is None:
            future = self._run_inline(func, *args)
        future.add_done_callback(self._task_done)
        return future

    def _task_done(self, future):
        with self.lock:
            self.tasks_completed += 1

    def process_gain(self, pcm, gain, timeout=None):
        """ゲイン変換（処理中にワーカーが異常終了した場合はインラインで再処理）"""
        try:
            return self.submit(apply_gain, pcm, gain).result(timeout=timeout)
        except BrokenProcessPool as e:
            self._handle_broken_pool(e)
            return apply_gain(pcm, gain)

    def is_healthy(self):
        if self.broken:
            return False
        return self.workers == 0 or self.executor is not None

    def attempt_recovery(self):
        """復旧処理"""
        if self.is_healthy():
            return True
        logger.info("[WORKERS] Attempting worker pool recovery...")
        return self.restart()

    def get_status(self):
        return {
            "workers": self.workers,
            "mode": "process" if self.executor else "inline",
            "tasks_completed": self.tasks_completed,
            "restarts": self.restarts,
        }

    def cleanup(self):
        """リソース解放"""
        with self.lock:
            executor = self.executor
            self.executor = None
            self.workers = 0
        if executor is not None:
            executor.shutdown(wait=True)
            logger.info("[WORKERS] Worker pool shut down")

    def __del__(self):
        """デストラクタ"""
        self.cleanup()
