"""
ワーカー数算出・ワーカープールのテスト
"""
import pytest
from array import array
from unittest.mock import MagicMock, patch


def make_profile(cores, usage, supports=True):
    from airsonos_bridge.models import SystemCapabilityProfile

    return SystemCapabilityProfile(cpu_cores=cores, memory_usage_ratio=usage,
                                   supports_workers=supports)


class TestComputeOptimalWorkers:
    """最適ワーカー数算出のテスト"""

    def test_no_worker_support(self):
        """ワーカー非対応は常に0"""
        from airsonos_bridge.worker_pool import compute_optimal_workers

        for cores in (1, 2, 8, 64):
            assert compute_optimal_workers(make_profile(cores, 0.1, supports=False)) == 0

    def test_capped_at_ceiling(self):
        """上限でキャップ"""
        from airsonos_bridge.worker_pool import compute_optimal_workers

        assert compute_optimal_workers(make_profile(8, 0.5)) == 4
        assert compute_optimal_workers(make_profile(8, 0.5), ceiling=2) == 2

    def test_memory_pressure_halves(self):
        """メモリ逼迫時は減少（非増加）"""
        from airsonos_bridge.worker_pool import compute_optimal_workers

        pressured = compute_optimal_workers(make_profile(8, 0.9))
        relaxed = compute_optimal_workers(make_profile(8, 0.5))

        assert pressured == 3
        assert pressured <= relaxed

    def test_minimum_one_with_spare_core(self):
        """空きコアがあれば最低1"""
        from airsonos_bridge.worker_pool import compute_optimal_workers

        assert compute_optimal_workers(make_profile(2, 0.95)) == 1
        assert compute_optimal_workers(make_profile(1, 0.1)) == 0

    def test_recommended_buffer_range(self):
        """メモリ量別推奨バッファ範囲"""
        from airsonos_bridge.worker_pool import GB, recommended_buffer_range

        assert recommended_buffer_range(256 * 1024 * 1024) == (100, 250)
        assert recommended_buffer_range(int(1.5 * GB)) == (200, 500)
        assert recommended_buffer_range(8 * GB) == (250, 750)


class TestDetectCapabilities:
    """システム能力検出のテスト"""

    def test_profile_from_psutil(self):
        """psutilの値からプロファイル生成"""
        from airsonos_bridge.worker_pool import GB, detect_capabilities

        with patch("airsonos_bridge.worker_pool.psutil") as mock_psutil:
            mock_psutil.virtual_memory.return_value = MagicMock(total=4 * GB, available=3 * GB)
            mock_psutil.cpu_count.return_value = 4

            profile = detect_capabilities(enable_workers=True)

        assert profile.cpu_cores == 4
        assert profile.memory_usage_ratio == pytest.approx(0.25)
        assert profile.recommended_buffer == (250, 750)
        if profile.supports_workers:
            assert profile.recommended_workers == 3

    def test_workers_disabled(self):
        """ワーカー無効設定"""
        from airsonos_bridge.worker_pool import GB, detect_capabilities

        with patch("airsonos_bridge.worker_pool.psutil") as mock_psutil:
            mock_psutil.virtual_memory.return_value = MagicMock(total=GB, available=GB // 2)
            mock_psutil.cpu_count.return_value = 8

            profile = detect_capabilities(enable_workers=False)

        assert profile.supports_workers is False
        assert profile.recommended_workers == 0


class TestAudioWorkerPool:
    """ワーカープールのテスト"""

    def test_apply_gain_clamps(self):
        """ゲイン適用と16bitクリップ"""
        from airsonos_bridge.worker_pool import apply_gain

        pcm = array("h", [20000, -20000, 100]).tobytes()
        result = array("h")
        result.frombytes(apply_gain(pcm, 2.0))

        assert list(result) == [32767, -32768, 200]

    def test_inline_pool(self):
        """ワーカー0はインライン実行"""
        from airsonos_bridge.worker_pool import AudioWorkerPool

        pool = AudioWorkerPool(0)
        future = pool.submit(sum, [1, 2, 3])

        assert future.done()
        assert future.result() == 6
        assert pool.get_status() == {"workers": 0, "mode": "inline", "tasks_completed": 1,
                                     "restarts": 0}
        assert pool.is_healthy() is True

    def test_inline_exception_propagates(self):
        """インライン実行の例外はFuture経由"""
        from airsonos_bridge.worker_pool import AudioWorkerPool

        pool = AudioWorkerPool(0)
        future = pool.submit(int, "not a number")

        with pytest.raises(ValueError):
            future.result()

    def test_resize_replaces_executor(self):
        """リサイズで実行器を差し替え"""
        from airsonos_bridge.worker_pool import AudioWorkerPool

        with patch("airsonos_bridge.worker_pool.ProcessPoolExecutor") as mock_executor_cls:
            first, second = MagicMock(), MagicMock()
            mock_executor_cls.side_effect = [first, second]

            pool = AudioWorkerPool(2)
            assert pool.get_status()["mode"] == "process"

            pool.resize(1)
            first.shutdown.assert_called_once_with(wait=False)
            mock_executor_cls.assert_called_with(max_workers=1)

            pool.resize(0)
            second.shutdown.assert_called_once_with(wait=False)
            assert pool.get_status()["mode"] == "inline"

    def test_resize_same_size_is_noop(self):
        """同数へのリサイズは何もしない"""
        from airsonos_bridge.worker_pool import AudioWorkerPool

        with patch("airsonos_bridge.worker_pool.ProcessPoolExecutor") as mock_executor_cls:
            pool = AudioWorkerPool(2)
            pool.resize(2)

            assert mock_executor_cls.call_count == 1
            pool.cleanup()

    def test_process_gain_inline(self):
        """インラインでのゲイン変換"""
        from airsonos_bridge.worker_pool import AudioWorkerPool

        pool = AudioWorkerPool(0)
        pcm = array("h", [1000, -1000]).tobytes()
        result = array("h")
        result.frombytes(pool.process_gain(pcm, 0.5))

        assert list(result) == [500, -500]

    def test_broken_pool_on_submit_restarts(self):
        """投入時にプール破損を検出した場合は再構築しインライン実行"""
        from concurrent.futures.process import BrokenProcessPool
        from airsonos_bridge.worker_pool import AudioWorkerPool

        with patch("airsonos_bridge.worker_pool.ProcessPoolExecutor") as mock_executor_cls:
            first, second = MagicMock(), MagicMock()
            first.submit.side_effect = BrokenProcessPool("worker died")
            mock_executor_cls.side_effect = [first, second]

            pool = AudioWorkerPool(2)
            future = pool.submit(sum, [1, 2, 3])

            assert future.result() == 6
            first.shutdown.assert_called_once_with(wait=False)
            assert mock_executor_cls.call_count == 2
            assert pool.executor is second
            assert pool.workers == 2
            assert pool.is_healthy() is True
            assert pool.get_status()["restarts"] == 1

    def test_worker_exit_during_gain(self):
        """処理中のワーカー異常終了はインラインで再処理"""
        from concurrent.futures.process import BrokenProcessPool
        from airsonos_bridge.worker_pool import AudioWorkerPool

        with patch("airsonos_bridge.worker_pool.ProcessPoolExecutor") as mock_executor_cls:
            first, second = MagicMock(), MagicMock()
            first.submit.return_value.result.side_effect = BrokenProcessPool("worker died")
            mock_executor_cls.side_effect = [first, second]

            pool = AudioWorkerPool(1)
            result = array("h")
            result.frombytes(pool.process_gain(array("h", [1000, -1000]).tobytes(), 0.5))

            assert list(result) == [500, -500]
            assert pool.executor is second
            assert pool.is_healthy() is True

    def test_failed_restart_reported_unhealthy(self):
        """再構築失敗中は不健全、復旧処理で再試行"""
        from concurrent.futures.process import BrokenProcessPool
        from airsonos_bridge.worker_pool import AudioWorkerPool

        with patch("airsonos_bridge.worker_pool.ProcessPoolExecutor") as mock_executor_cls:
            first, third = MagicMock(), MagicMock()
            first.submit.side_effect = BrokenProcessPool("worker died")
            mock_executor_cls.side_effect = [first, OSError("fork failed"), third]

            pool = AudioWorkerPool(2)
            assert pool.submit(sum, [1, 1]).result() == 2

            assert pool.is_healthy() is False
            assert pool.get_status()["mode"] == "inline"
            assert pool.submit(sum, [2, 2]).result() == 4

            assert pool.attempt_recovery() is True
            assert pool.is_healthy() is True
            assert pool.executor is third
            assert pool.workers == 2
