"""
AirSonos Bridge メインアプリケーション
各コンポーネントの構築・単一制御ループ・シグナル処理・後片付け
"""

import argparse
import logging
import os
import queue
import signal
import sys
import threading
import time
from concurrent.futures import Future

from . import __version__
from . import config
from .audio_pipeline import AudioPipeline
from .auto_tuner import AutoTuner
from .buffer_manager import AdaptiveBufferManager
from .config import BridgeConfig, load_config
from .device_registry import DeviceRegistry
from .discovery import DiscoveryEngine
from .errors import ConfigurationError, TuningApplicationError
from .event_stream import EventStream
from .http_server import HTTPControlServer
from .models import RuntimeConfig
from .network_diagnostics import NetworkDiagnostics
from .performance_monitor import PerformanceMonitor
from .worker_pool import AudioWorkerPool, compute_optimal_workers, detect_capabilities

DASHBOARD_INTERVAL = 30.0
REPORT_INTERVAL = 3600.0
DAILY_REPORT_INTERVAL = 86400.0


# ログ設定
def setup_logging(verbose=False):
    """ログ設定初期化"""
    log_dir = config.LOG_FILE.parent
    log_dir.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(config.LOG_FILE),
            logging.StreamHandler(sys.stdout)
        ]
    )

logger = logging.getLogger(__name__)


class AirSonosBridge:
    """メインアプリケーションクラス

    非同期の生産者（AirPlayエンドポイント・音声パス・HTTP）はキューへ投入のみ行い、
    状態の変更はすべて run() の制御スレッドで処理する。
    """

    def __init__(self, bridge_config=None, clock=time.monotonic, handle_signals=True,
                 enable_http=True):
        self.config = bridge_config or BridgeConfig()
        self.clock = clock
        self.enable_http = enable_http

        self.events = queue.Queue()
        self.event_stream = EventStream()
        self.registry = DeviceRegistry()
        self.runtime = RuntimeConfig.from_config(self.config)
        self.profile = None

        self.buffer_manager = AdaptiveBufferManager(self.config.audio, clock)
        self.diagnostics = NetworkDiagnostics(self.config)
        self.discovery = DiscoveryEngine(self.registry, self.config, clock)
        self.worker_pool = None
        self.tuner = None
        self.monitor = None
        self.audio_pipeline = None
        self.http_server = None

        self.running = False
        self.discovery_thread = None
        self.network_thread = None
        self.compatibility_thread = None
        self.deadlines = {}

        # シグナルハンドラー設定
        if handle_signals:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

    def initialize(self):
        """アプリケーション初期化"""
        try:
            logger.info("========================================")
            logger.info(f"AirSonos Bridge {__version__}")
            logger.info("Self-tuning AirPlay to Sonos bridge")
            logger.info("========================================")

            # システム能力検出
            self.profile = detect_capabilities(self.runtime.enable_worker_threads,
                                               self.runtime.worker_ceiling)
            workers = 0
            if self.runtime.enable_worker_threads:
                workers = min(compute_optimal_workers(self.profile, self.runtime.worker_ceiling),
                              self.runtime.max_workers)
            self.worker_pool = AudioWorkerPool(workers)

            # 自動調整・監視
            self.tuner = AutoTuner(self.runtime, self.buffer_manager, self.worker_pool,
                                   self.config, self.clock, self.event_stream)
            self.tuner.add_listener(self._on_runtime_changed)
            self.tuner.configure_from_capabilities(self.profile)
            self.monitor = PerformanceMonitor(self.config, self.registry, self.buffer_manager,
                                              self.event_stream, self.clock,
                                              tuning_callback=self.tuner.trigger_auto_tuning)
            if not self.monitor.initialize():
                logger.warning("[SYSTEM] Resource monitoring unavailable - continuing")

            # 音声パイプライン
            logger.info("[SYSTEM] Initializing audio pipeline...")
            self.audio_pipeline = AudioPipeline(self.buffer_manager, self.worker_pool,
                                                event_sink=self.post_event)
            if not self.audio_pipeline.initialize():
                logger.error("[SYSTEM] Failed to initialize audio pipeline")
                return False

            # 手動デバイス登録
            self.discovery.register_manual_devices()

            # HTTP制御サーバー
            if self.enable_http:
                logger.info("[SYSTEM] Initializing HTTP control server...")
                self.http_server = HTTPControlServer(self)
                if not self.http_server.initialize():
                    logger.error("[SYSTEM] Failed to initialize HTTP server")
                    return False
                self.http_server.start_server()

            self.event_stream.set_health("healthy")
            self.event_stream.update_sensor("auto_tuning",
                                            "active" if self.config.monitoring.auto_tuning_enabled
                                            else "disabled")
            logger.info("[SYSTEM] All components initialized successfully")
            logger.info(f"[INFO] Buffer: {self.buffer_manager.current_size}ms "
                        f"({self.runtime.min_buffer_size}-{self.runtime.max_buffer_size}ms)")
            logger.info(f"[INFO] Workers: {workers}")
            logger.info("========================================")
            return True

        except Exception as e:
            logger.error(f"[SYSTEM] Initialization failed: {e}")
            return False

    # =========================================================================
    # 生産者向けインターフェース（任意スレッドから呼び出し可）
    # =========================================================================

    def post_event(self, event_type, payload=None):
        """イベントを制御キューへ投入"""
        self.events.put(("event", event_type, payload or {}, None))

    def submit_command(self, command, payload=None):
        """設定変更・操作要求を制御キューへ投入（結果はFuture）"""
        future = Future()
        self.events.put(("command", command, payload or {}, future))
        return future

    def push_frames(self, data, device=None):
        """デコード済み音声フレーム受け取り"""
        if self.audio_pipeline:
            return self.audio_pipeline.push_frames(data, device)
        return 0

    # =========================================================================
    # 制御ループ
    # =========================================================================

    def run(self):
        """メインループ実行"""
        try:
            if not self.initialize():
                logger.error("[SYSTEM] Initialization failed - exiting")
                return 1

            self.running = True
            self._schedule_all()
            self._start_discovery()
            self._start_diagnostics()

            logger.info("[SYSTEM] Entering control loop...")
            while self.running:
                try:
                    self.process_pending(timeout=self._next_wait())
                    self.run_periodic_tasks()
                except KeyboardInterrupt:
                    logger.info("[SYSTEM] Keyboard interrupt received")
                    break
                except Exception as e:
                    logger.error(f"[SYSTEM] Control loop error: {e}")
                    time.sleep(1.0)

            return 0

        except Exception as e:
            logger.error(f"[SYSTEM] Run error: {e}")
            return 1
        finally:
            self.cleanup()

    def _schedule_all(self):
        now = self.clock()
        self.deadlines = {
            "sample": now,
            "network": now + self.config.monitoring.network_interval,
            "devices": now + self.runtime.health_check_interval,
            "assessment": now + self.config.monitoring.assessment_interval,
            "dashboard": now + DASHBOARD_INTERVAL,
            "report": now + REPORT_INTERVAL,
            "daily_report": now + DAILY_REPORT_INTERVAL,
        }

    def _next_wait(self):
        if not self.deadlines:
            return 1.0
        return max(0.0, min(min(self.deadlines.values()) - self.clock(), 1.0))

    def process_pending(self, timeout=0.0):
        """キュー内の要求を処理（最初の1件のみtimeoutまで待機）"""
        processed = 0
        block = timeout > 0
        while True:
            try:
                item = self.events.get(block=block, timeout=timeout if block else None)
            except queue.Empty:
                return processed
            block = False
            self._dispatch(*item)
            processed += 1

    def _dispatch(self, kind, name, payload, future):
        if kind == "event":
            self._handle_event(name, payload)
        else:
            self._handle_command(name, payload, future)

    def _handle_event(self, event_type, payload):
        """イベント処理"""
        if event_type == "discovery_result":
            stored = self.discovery.register_results(payload.get("records", []))
            self.event_stream.update_sensor("devices_total", len(self.registry))
            if stored:
                self._start_compatibility_test([record.key for record in stored])
            return
        if event_type == "compatibility_result":
            self.discovery.apply_compatibility_reports(payload.get("reports", {}))
            self.event_stream.update_sensor(
                "devices_compatible", sum(1 for r in self.registry.all() if r.verified))
            return
        if event_type == "network_samples":
            self.monitor.apply_network_samples(payload.get("samples", []))
            return
        if event_type == "diagnostics_complete":
            quality = payload.get("quality")
            self.event_stream.update_sensor("network_diagnostics", quality)
            self.tuner.configure_from_diagnostics(quality)
            return
        if not self.monitor.handle_event(event_type, payload):
            logger.debug(f"[SYSTEM] Ignored event: {event_type}")

    def _handle_command(self, command, payload, future):
        """コマンド処理"""
        try:
            if command == "buffer_bounds":
                result = self.tuner.apply_service_request("buffer_bounds", payload)
            elif command == "force_scan":
                result = self._start_discovery()
            elif command == "restart":
                result = self.restart()
            elif command == "compatibility_test":
                result = self._start_compatibility_test(payload.get("targets"),
                                                        payload.get("verify", False))
            elif command == "run_diagnostics":
                result = self._start_diagnostics()
            else:
                raise TuningApplicationError(command, "unknown command")
        except TuningApplicationError as e:
            logger.warning(f"[SYSTEM] Command {command} rejected: {e}")
            if future:
                future.set_exception(e)
            return
        if future:
            future.set_result(result)

    def run_periodic_tasks(self):
        """期限到来した定期処理を実行"""
        now = self.clock()
        monitoring = self.config.monitoring

        if now >= self.deadlines["sample"]:
            self.deadlines["sample"] = now + monitoring.sample_interval
            self.monitor.tick()
            self.buffer_manager.adjust()

        if now >= self.deadlines["network"]:
            self.deadlines["network"] = now + monitoring.network_interval
            self._start_network_probe()

        if now >= self.deadlines["devices"]:
            self.deadlines["devices"] = now + self.runtime.health_check_interval
            self.monitor.assess_device_reliability()
            self._update_health()

        if now >= self.deadlines["assessment"]:
            self.deadlines["assessment"] = now + monitoring.assessment_interval
            self.monitor.assess_performance()

        if now >= self.deadlines["dashboard"]:
            self.deadlines["dashboard"] = now + DASHBOARD_INTERVAL
            self.monitor.publish_dashboard()

        if now >= self.deadlines["report"]:
            self.deadlines["report"] = now + REPORT_INTERVAL
            self.publish_performance_report(REPORT_INTERVAL)

        if now >= self.deadlines["daily_report"]:
            self.deadlines["daily_report"] = now + DAILY_REPORT_INTERVAL
            self.publish_performance_report(DAILY_REPORT_INTERVAL)

    def publish_performance_report(self, window):
        """期間レポートを生成してイベントストリームへ配信"""
        report = self.monitor.performance_report(
            window=window, tuning_history=self.tuner.history if self.tuner else None)
        self.event_stream.publish("performance_report", report)
        logger.info(f"[MONITOR] Performance report published ({window / 3600:.0f}h window, "
                    f"score {report['performance']['overall_score']:.0f})")
        return report

    def _update_health(self):
        """コンポーネント健全性の集約"""
        audio_ok = self.audio_pipeline and self.audio_pipeline.is_healthy()
        if not audio_ok and self.audio_pipeline:
            logger.warning("[MONITOR] Audio pipeline issue - attempting recovery")
            self.audio_pipeline.attempt_recovery()

        unreliable = [r.device_id for r in self.registry.all() if r.unreliable]
        if not audio_ok:
            self.event_stream.set_health("degraded", "audio pipeline unavailable")
        elif unreliable:
            self.event_stream.set_health("degraded", f"device unreliable: {', '.join(unreliable)}")
        elif self.tuner and self.tuner.paused:
            self.event_stream.set_health("degraded", "auto-tuning paused")
        else:
            self.event_stream.set_health("healthy")

    # =========================================================================
    # バックグラウンド処理（結果はキュー経由で反映）
    # =========================================================================

    def _start_discovery(self):
        """ディスカバリーをバックグラウンドで開始"""
        if self.discovery_thread and self.discovery_thread.is_alive():
            logger.info("[SYSTEM] Discovery already running")
            return False

        def run_discovery():
            try:
                records = self.discovery.discover(register=False)
                self.post_event("discovery_result", {"records": records})
            except Exception as e:
                logger.error(f"[DISCOVERY] Discovery failed: {e}")

        self.discovery_thread = threading.Thread(target=run_discovery, daemon=True)
        self.discovery_thread.start()
        return True

    def _start_network_probe(self):
        """デバイス遅延測定をバックグラウンドで開始"""
        if self.network_thread and self.network_thread.is_alive():
            return False
        if not len(self.registry):
            return False

        timeout = self.runtime.timeout

        def run_probe():
            try:
                samples = self.monitor.collect_network_samples(timeout=timeout)
                self.post_event("network_samples", {"samples": samples})
            except Exception as e:
                logger.error(f"[MONITOR] Network probe failed: {e}")

        self.network_thread = threading.Thread(target=run_probe, daemon=True)
        self.network_thread.start()
        return True

    def _start_compatibility_test(self, targets=None, verify=False):
        """デバイス互換性テストをバックグラウンドで開始（結果は制御スレッドで反映）"""
        if self.compatibility_thread and self.compatibility_thread.is_alive():
            logger.info("[SYSTEM] Compatibility test already running")
            return False
        if targets is None and not len(self.registry):
            return False

        def run_compatibility():
            try:
                reports = self.discovery.test_device_compatibility(
                    targets, verify=verify, write_back=False)
                self.post_event("compatibility_result", {"reports": reports})
            except Exception as e:
                logger.error(f"[DISCOVERY] Compatibility test failed: {e}")

        self.compatibility_thread = threading.Thread(target=run_compatibility, daemon=True)
        self.compatibility_thread.start()
        return True

    def _start_diagnostics(self):
        """ネットワーク診断をバックグラウンドで開始"""
        def run_diagnostics():
            try:
                report = self.diagnostics.run_diagnostics()
                self.post_event("diagnostics_complete", {"quality": report.get("quality")})
            except Exception as e:
                logger.error(f"[NETWORK] Diagnostics failed: {e}")

        threading.Thread(target=run_diagnostics, daemon=True).start()
        return True

    def _on_runtime_changed(self, runtime):
        """ライブ設定変更の反映"""
        self.discovery.config.basic.timeout = runtime.timeout
        self.event_stream.update_sensor("buffer_range",
                                        f"{runtime.min_buffer_size}-{runtime.max_buffer_size}")
        self.event_stream.update_sensor("max_workers", runtime.max_workers)

    def restart(self):
        """ソフトリスタート（音声パス再構築と再ディスカバリー）"""
        logger.info("[SYSTEM] Restart requested - rebuilding audio path")
        self.audio_pipeline.cleanup()
        if not self.audio_pipeline.attempt_recovery():
            logger.error("[SYSTEM] Audio pipeline recovery failed during restart")
        self.buffer_manager.reset_counters()
        self._start_discovery()
        self.event_stream.notify("info", "AirSonos bridge restarted")
        return True

    # =========================================================================
    # 状態・後片付け
    # =========================================================================

    def get_status(self):
        """システム状態取得"""
        return {
            "version": __version__,
            "running": self.running,
            "health": self.event_stream.get_health(),
            "buffer": self.buffer_manager.get_status(),
            "workers": self.worker_pool.get_status() if self.worker_pool else None,
            "audio": self.audio_pipeline.get_audio_quality_metrics() if self.audio_pipeline else None,
            "performance": {
                "score": self.monitor.overall_score,
                "issues": [i.to_dict() for i in self.monitor.identify_performance_issues()],
            } if self.monitor else None,
            "tuning": self.tuner.get_status() if self.tuner else None,
            "devices": {
                "total": len(self.registry),
                "online": sum(1 for r in self.registry.all() if r.online),
            },
            "discovery": self.discovery.last_results,
            "capabilities": self.profile.to_dict() if self.profile else None,
        }

    def _signal_handler(self, signum, frame):
        """シグナルハンドラー"""
        signal_names = {signal.SIGINT: "SIGINT", signal.SIGTERM: "SIGTERM"}
        signal_name = signal_names.get(signum, f"Signal {signum}")

        logger.info(f"[SYSTEM] {signal_name} received - initiating shutdown")
        self.running = False

    def cleanup(self):
        """リソース解放"""
        logger.info("[SYSTEM] Cleaning up resources...")

        self.running = False
        self.event_stream.set_health("stopped")

        if self.http_server:
            self.http_server.cleanup()

        if self.audio_pipeline:
            self.audio_pipeline.cleanup()

        if self.worker_pool:
            self.worker_pool.cleanup()

        logger.info("[SYSTEM] Cleanup completed")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Self-tuning AirPlay to Sonos bridge")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


def main(argv=None):
    """メイン関数"""
    args = parse_args(argv)

    try:
        bridge_config = load_config(args.config)
    except ConfigurationError as e:
        setup_logging(args.verbose)
        logger.error(f"[CONFIG] {e}")
        sys.exit(1)

    setup_logging(args.verbose or bridge_config.basic.verbose)

    # PIDファイル作成
    try:
        config.PID_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(config.PID_FILE, 'w') as f:
            f.write(str(os.getpid()))
    except Exception as e:
        logger.warning(f"[SYSTEM] PID file creation failed: {e}")

    # アプリケーション実行
    app = AirSonosBridge(bridge_config)
    exit_code = app.run()

    # PIDファイル削除
    try:
        if config.PID_FILE.exists():
            config.PID_FILE.unlink()
    except Exception as e:
        logger.debug(f"[SYSTEM] PID file cleanup error: {e}")

    logger.info(f"[SYSTEM] AirSonos Bridge exited with code {exit_code}")
    sys.exit(exit_code)

if __name__ == "__main__":
    main()
