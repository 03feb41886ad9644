"""
適応バッファ管理のテスト

期待される動作:
- アンダーラン多発で拡大、オーバーラン多発で縮小（ステップ50ms）
- サイズは常に[min, max]内
- クールダウン中の調整は保留され、カウンタは保持される
"""
import pytest
from unittest.mock import MagicMock


def make_manager(clock, **overrides):
    from airsonos_bridge.buffer_manager import AdaptiveBufferManager
    from airsonos_bridge.config import AudioSettings

    return AdaptiveBufferManager(AudioSettings(**overrides), clock)


class TestBufferAdjustment:
    """バッファ調整のテスト"""

    def test_initial_size_is_minimum(self, clock):
        """初期サイズは最小値"""
        manager = make_manager(clock)

        assert manager.current_size == 200
        assert manager.state.min_size == 200
        assert manager.state.max_size == 500

    def test_underruns_increase_buffer(self, clock):
        """閾値超過のアンダーランで拡大しカウンタをリセット"""
        manager = make_manager(clock)
        manager.record_underrun(4)

        assert manager.adjust() == 250
        assert manager.current_size == 250
        assert manager.state.underrun_count == 0

    def test_threshold_not_exceeded(self, clock):
        """閾値ちょうどでは調整しない"""
        manager = make_manager(clock)
        manager.record_underrun(3)

        assert manager.adjust() is None
        assert manager.current_size == 200

    def test_overruns_decrease_buffer(self, clock):
        """閾値超過のオーバーランで縮小"""
        manager = make_manager(clock)
        manager.record_underrun(4)
        manager.adjust()
        clock.advance(6)

        manager.record_overrun(11)

        assert manager.adjust() == 200
        assert manager.state.overrun_count == 0

    def test_size_stays_within_bounds(self, clock):
        """任意のアンダーラン列でサイズは範囲内"""
        manager = make_manager(clock)

        for _ in range(50):
            manager.record_underrun(10)
            manager.adjust()
            assert 200 <= manager.current_size <= 500
            clock.advance(6)

        assert manager.current_size == 500
        manager.reset_counters()

        for _ in range(50):
            manager.record_overrun(20)
            manager.adjust()
            assert 200 <= manager.current_size <= 500
            clock.advance(6)

        assert manager.current_size == 200

    def test_listener_notified(self, clock):
        """サイズ変更通知"""
        manager = make_manager(clock)
        listener = MagicMock()
        manager.add_listener(listener)

        manager.record_underrun(4)
        manager.adjust()

        listener.assert_called_once_with(250, 200)


class TestCooldown:
    """クールダウンのテスト"""

    def test_second_trigger_within_cooldown_ignored(self, clock):
        """クールダウン内の2回目は無効（1回目のみと同じ結果）"""
        manager = make_manager(clock)

        manager.record_underrun(4)
        manager.adjust()
        size_after_first = manager.current_size

        clock.advance(1)
        manager.record_underrun(4)

        assert manager.adjust() is None
        assert manager.current_size == size_after_first
        assert manager.in_cooldown() is True

    def test_suppressed_pressure_accumulates(self, clock):
        """保留中のカウンタは保持され、クールダウン後に反映"""
        manager = make_manager(clock)
        manager.record_underrun(4)
        manager.adjust()

        clock.advance(1)
        manager.record_underrun(4)
        manager.adjust()
        assert manager.state.underrun_count == 4

        clock.advance(5)
        assert manager.adjust() == 300
        assert manager.state.underrun_count == 0

    def test_counters_reset_only_on_applied_adjustment(self, clock):
        """カウンタのリセットは適用時のみ"""
        manager = make_manager(clock)
        manager.record_underrun(2)

        assert manager.adjust() is None
        assert manager.state.underrun_count == 2

        manager.record_underrun(2)
        assert manager.adjust() == 250
        assert manager.state.underrun_count == 0


class TestBoundsAndState:
    """範囲設定・有効/無効のテスト"""

    def test_set_bounds_swaps_inverted(self, clock):
        """逆転した範囲は入れ替え"""
        manager = make_manager(clock)

        assert manager.set_bounds(500, 250) == (250, 500)
        assert manager.current_size == 250

    def test_set_bounds_clamps_hard_limits(self, clock):
        """ハード上限/下限へクランプ"""
        manager = make_manager(clock)

        assert manager.set_bounds(10, 5000) == (64, 2048)

    def test_set_bounds_clamps_current_size(self, clock):
        """現在サイズは新範囲へクランプ"""
        manager = make_manager(clock)
        listener = MagicMock()
        manager.add_listener(listener)

        manager.set_bounds(300, 600)

        assert manager.current_size == 300
        listener.assert_called_once_with(300, 200)

    def test_disabled_manager_keeps_counting(self, clock):
        """無効時は調整せずカウンタは蓄積"""
        manager = make_manager(clock, adaptive_buffering=False)
        manager.record_underrun(10)

        assert manager.adjust() is None
        assert manager.state.underrun_count == 10

        manager.enable()
        assert manager.adjust() == 250

    def test_status(self, clock):
        """状態取得"""
        manager = make_manager(clock)
        status = manager.get_status()

        assert status["current_size"] == 200
        assert status["enabled"] is True
        assert status["in_cooldown"] is False
