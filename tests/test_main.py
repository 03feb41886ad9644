"""
メインアプリケーション（制御ループ）のテスト

期待される動作:
- 生産者はキューへ投入のみ行い、状態変更は制御スレッドで処理
- 設定変更要求の結果はFuture経由で返却
- 起動時の設定エラーのみ致命的（終了コード1）
"""
import pytest
from unittest.mock import MagicMock, patch


def make_bridge(clock, recommended_buffer=(200, 500), **config_changes):
    from airsonos_bridge.config import BridgeConfig, ManualDevice
    from airsonos_bridge.main import AirSonosBridge
    from airsonos_bridge.models import SystemCapabilityProfile

    config = BridgeConfig()
    config.performance.enable_worker_threads = False
    config.devices = [ManualDevice(host="192.168.1.50", name="Office")]
    for section, values in config_changes.items():
        for key, value in values.items():
            setattr(getattr(config, section), key, value)

    profile = SystemCapabilityProfile(cpu_cores=2, total_memory=2 * 1024 ** 3,
                                      recommended_buffer=recommended_buffer)
    bridge = AirSonosBridge(config, clock=clock, handle_signals=False, enable_http=False)
    with patch("airsonos_bridge.main.detect_capabilities", return_value=profile):
        assert bridge.initialize() == True
    return bridge


@pytest.fixture
def app(clock):
    bridge = make_bridge(clock)
    yield bridge
    bridge.cleanup()


class TestInitialization:
    """初期化のテスト"""

    def test_components_ready(self, app):
        """各コンポーネントの構築"""
        assert app.event_stream.get_health()["status"] == "healthy"
        assert app.worker_pool.workers == 0
        assert app.audio_pipeline.is_healthy() == True
        assert app.registry.get("192.168.1.50").manual is True
        assert app.http_server is None

    def test_status(self, app):
        """状態取得"""
        status = app.get_status()

        assert status["devices"] == {"total": 1, "online": 1}
        assert status["buffer"]["current_size"] == 200
        assert status["performance"]["issues"] == []
        assert status["capabilities"]["supports_workers"] is False


class TestControlQueue:
    """制御キュー処理のテスト"""

    def test_events_applied_on_control_thread(self, app):
        """イベントは処理時に反映"""
        app.post_event("buffer_underrun", {"device": "192.168.1.50:1400"})
        assert app.buffer_manager.state.underrun_count == 0

        assert app.process_pending() == 1
        assert app.buffer_manager.state.underrun_count == 1
        assert app.monitor.underruns == 1

    def test_buffer_bounds_command(self, app):
        """範囲変更要求はFutureで結果返却"""
        future = app.submit_command("buffer_bounds", {"min_buffer_size": 300,
                                                      "max_buffer_size": 800})
        assert not future.done()

        app.process_pending()

        decision = future.result(timeout=1)
        assert decision.success is True
        assert app.runtime.min_buffer_size == 300
        assert app.buffer_manager.current_size == 300

    def test_invalid_buffer_bounds_command(self, app):
        """不正な範囲はFutureへ例外"""
        from airsonos_bridge.errors import TuningApplicationError

        future = app.submit_command("buffer_bounds", {"min_buffer_size": 900,
                                                      "max_buffer_size": 300})
        app.process_pending()

        with pytest.raises(TuningApplicationError):
            future.result(timeout=1)
        assert app.runtime.min_buffer_size == 200

    def test_unknown_command(self, app):
        """未知のコマンド"""
        from airsonos_bridge.errors import TuningApplicationError

        future = app.submit_command("self_destruct")
        app.process_pending()

        with pytest.raises(TuningApplicationError):
            future.result(timeout=1)

    def test_discovery_results_registered(self, app):
        """バックグラウンドディスカバリー結果の登録"""
        from airsonos_bridge.models import DeviceRecord, DiscoveryMethod

        records = [DeviceRecord(host="192.168.1.60", name="Kitchen",
                                method=DiscoveryMethod.STANDARD)]
        with patch.object(app, "_start_compatibility_test", return_value=True) as start_test:
            app.post_event("discovery_result", {"records": records})
            app.process_pending()

        assert len(app.registry) == 2
        assert app.event_stream.get_sensors()["airsonos_devices_total"] == 2
        start_test.assert_called_once_with([("192.168.1.60", 1400)])

    def test_network_samples_applied(self, app):
        """遅延測定結果の反映"""
        app.post_event("network_samples", {"samples": [("192.168.1.50:1400", 15.0, None)]})
        app.process_pending()

        assert app.monitor.snapshot.network_quality.value == "excellent"

    def test_restart_command(self, app):
        """ソフトリスタート"""
        with patch.object(app, "_start_discovery", return_value=True) as start_discovery:
            future = app.submit_command("restart")
            app.process_pending()

        assert future.result(timeout=1) is True
        start_discovery.assert_called_once()
        assert app.audio_pipeline.is_healthy() == True


class TestPeriodicTasks:
    """定期処理のテスト"""

    def test_schedule(self, app, clock):
        """期限到来した処理のみ実行"""
        app.monitor.tick = MagicMock()
        app.monitor.assess_device_reliability = MagicMock()
        app.monitor.assess_performance = MagicMock()
        app._start_network_probe = MagicMock()
        app._schedule_all()

        app.run_periodic_tasks()
        app.monitor.tick.assert_called_once()
        app._start_network_probe.assert_not_called()

        clock.advance(10)
        app.run_periodic_tasks()
        app._start_network_probe.assert_called_once()
        app.monitor.assess_device_reliability.assert_not_called()

        clock.advance(20)
        app.run_periodic_tasks()
        app.monitor.assess_device_reliability.assert_called_once()

        clock.advance(30)
        app.run_periodic_tasks()
        app.monitor.assess_performance.assert_called_once()

    def test_degraded_health_for_unreliable_device(self, app):
        """信頼性低下デバイスがあればdegraded"""
        app.registry.get("192.168.1.50").unreliable = True

        app._update_health()

        health = app.event_stream.get_health()
        assert health["status"] == "degraded"
        assert "192.168.1.50:1400" in health["detail"]

    def test_degraded_health_when_paused(self, app):
        """自動調整停止中はdegraded"""
        app.tuner.pause()

        app._update_health()

        assert app.event_stream.get_health()["detail"] == "auto-tuning paused"

    def test_network_probe_skipped_without_devices(self, clock):
        """デバイスなしでは遅延測定しない"""
        from airsonos_bridge.main import AirSonosBridge

        bridge = AirSonosBridge(clock=clock, handle_signals=False, enable_http=False)

        assert bridge._start_network_probe() is False


class TestMain:
    """エントリポイントのテスト"""

    def test_invalid_config_exits(self, tmp_path):
        """設定ファイルが読めない場合は終了コード1"""
        from airsonos_bridge import main as main_module

        with patch.object(main_module, "setup_logging"), \
             pytest.raises(SystemExit) as excinfo:
            main_module.main(["--config", str(tmp_path / "missing.yaml")])

        assert excinfo.value.code == 1

    def test_parse_args(self):
        """コマンドライン引数"""
        from airsonos_bridge.main import parse_args

        args = parse_args(["--config", "/data/airsonos.yaml", "--verbose"])

        assert args.config == "/data/airsonos.yaml"
        assert args.verbose is True


class TestCompatibility:
    """互換性テストの制御スレッド反映のテスト"""

    def test_results_applied_on_control_thread(self, app, mock_speaker):
        """テスト結果はキュー処理時にレジストリへ反映"""
        app.discovery.speaker_factory = lambda host: mock_speaker

        with patch("airsonos_bridge.discovery.tcp_probe", return_value=9.0):
            future = app.submit_command("compatibility_test", {"verify": True})
            app.process_pending()
            app.compatibility_thread.join(timeout=10)

        assert future.result(timeout=1) is True
        record = app.registry.get("192.168.1.50")
        assert record.model == ""
        assert record.verified is False

        assert app.process_pending() == 1

        assert record.model == "Sonos One"
        assert record.verified is True
        assert record.capabilities["alac"] is True
        assert list(record.latencies) == [9.0]
        assert app.event_stream.get_sensors()["airsonos_devices_compatible"] == 1

    def test_running_test_not_duplicated(self, app):
        """実行中は二重起動しない"""
        app.compatibility_thread = MagicMock()
        app.compatibility_thread.is_alive.return_value = True

        future = app.submit_command("compatibility_test")
        app.process_pending()

        assert future.result(timeout=1) is False


class TestAutoConfiguration:
    """起動時・診断後の自動構成のテスト"""

    def test_recommended_buffer_applied_at_startup(self, clock):
        """既定のバッファ範囲はシステム能力の推奨範囲で初期化"""
        from airsonos_bridge.audio_pipeline import bytes_for_ms

        bridge = make_bridge(clock, recommended_buffer=(250, 750))
        try:
            assert (bridge.runtime.min_buffer_size, bridge.runtime.max_buffer_size) == (250, 750)
            assert bridge.buffer_manager.current_size == 250
            assert bridge.audio_pipeline.frame_buffer.get_buffer_size() == bytes_for_ms(250)
            assert bridge.tuner.history[-1].trigger == "auto_config:buffer"
        finally:
            bridge.cleanup()

    def test_configured_buffer_not_overridden(self, clock):
        """明示設定されたバッファ範囲は維持"""
        bridge = make_bridge(clock, recommended_buffer=(250, 750),
                             audio={"min_buffer_size": 300, "max_buffer_size": 900})
        try:
            assert (bridge.runtime.min_buffer_size, bridge.runtime.max_buffer_size) == (300, 900)
            assert bridge.buffer_manager.current_size == 300
        finally:
            bridge.cleanup()

    def test_diagnostics_timeout_applied(self, app):
        """診断結果の品質ティアからタイムアウトを設定"""
        app.post_event("diagnostics_complete", {"quality": "excellent"})
        app.process_pending()

        assert app.runtime.timeout == 3
        assert app.discovery.config.basic.timeout == 3
        assert app.event_stream.get_sensors()["airsonos_network_diagnostics"] == "excellent"

    def test_unmeasured_diagnostics_keep_timeout(self, app):
        """品質不明の診断結果ではタイムアウトを変更しない"""
        app.post_event("diagnostics_complete", {"quality": "unknown"})
        app.process_pending()

        assert app.runtime.timeout == 5


class TestPerformanceReports:
    """定期性能レポートのテスト"""

    def test_hourly_and_daily_reports_published(self, app, clock):
        """1時間・1日ごとにレポートを配信"""
        app._start_network_probe = MagicMock()
        app._schedule_all()

        clock.advance(3599)
        app.run_periodic_tasks()
        assert app.event_stream.recent(event_type="performance_report") == []

        app.tuner.last_auto_tuning = None
        app.tuner.trigger_auto_tuning("unreliable_device")

        clock.advance(1)
        app.run_periodic_tasks()
        reports = app.event_stream.recent(event_type="performance_report")
        assert len(reports) == 1
        data = reports[0]["data"]
        assert data["window"] == 3600.0
        assert "recommendations" in data
        assert any(d["trigger"] == "unreliable_device" for d in data["optimizations"])

        clock.advance(86400)
        app.run_periodic_tasks()
        windows = [e["data"]["window"] for e in
                   app.event_stream.recent(event_type="performance_report")]
        assert windows == [3600.0, 3600.0, 86400.0]
