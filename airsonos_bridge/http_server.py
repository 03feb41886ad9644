"""
HTTP制御サーバーモジュール
状態・メトリクス取得と設定変更要求の受け付け（Flask）
"""

import logging
import threading
import time
from concurrent.futures import TimeoutError as FuturesTimeout

from flask import Flask, jsonify, request

from . import config
from .errors import TuningApplicationError

logger = logging.getLogger(__name__)

COMMAND_WAIT_TIMEOUT = 5.0


class HTTPControlServer:
    """HTTP制御サーバークラス

    変更要求は制御ループのキューへ投入され、制御スレッドで適用される。
    """

    def __init__(self, bridge, host=None, port=None):
        self.app = Flask(__name__)
        self.bridge = bridge
        self.host = host or config.HTTP_SERVER_HOST
        self.port = port or config.HTTP_SERVER_PORT
        self.server_thread = None
        self.running = False
        self._start_time = time.time()

        self._setup_routes()

    def _setup_routes(self):
        """Flaskルート設定"""

        @self.app.route('/status')
        def get_status():
            """システム状態エンドポイント"""
            try:
                return jsonify(self.bridge.get_status())
            except Exception as e:
                logger.error(f"[HTTP] Status endpoint error: {e}")
                return jsonify({"error": "Status unavailable"}), 500

        @self.app.route('/health')
        def health_check():
            """ヘルスチェックエンドポイント"""
            health = self.bridge.event_stream.get_health()
            if self.running and health.get("status") in ("healthy", "degraded"):
                return jsonify({**health, "timestamp": time.time()})
            return jsonify({**health, "status": health.get("status", "unhealthy")}), 503

        @self.app.route('/metrics')
        def get_metrics():
            """メトリクスエンドポイント"""
            try:
                metrics = self.bridge.monitor.get_metrics()
                metrics["sensors"] = self.bridge.event_stream.get_sensors()
                metrics["buffer"] = self.bridge.buffer_manager.get_status()
                return jsonify(metrics)
            except Exception as e:
                logger.error(f"[HTTP] Metrics endpoint error: {e}")
                return jsonify({"error": "Metrics unavailable"}), 500

        @self.app.route('/devices')
        def get_devices():
            """デバイス一覧エンドポイント"""
            devices = [record.to_dict() for record in self.bridge.registry.all()]
            return jsonify({"count": len(devices), "devices": devices})

        @self.app.route('/diagnostics')
        def get_diagnostics():
            """ネットワーク診断・トラブルシューティング結果"""
            try:
                report = self.bridge.diagnostics.troubleshooting_report(
                    device_count=len(self.bridge.registry),
                    profile=self.bridge.profile,
                )
                return jsonify(report)
            except Exception as e:
                logger.error(f"[HTTP] Diagnostics endpoint error: {e}")
                return jsonify({"error": "Diagnostics unavailable"}), 500

        @self.app.route('/commands/restart', methods=['POST'])
        def command_restart():
            """再起動要求"""
            self.bridge.submit_command("restart")
            return jsonify({"accepted": True, "command": "restart"}), 202

        @self.app.route('/commands/force_scan', methods=['POST'])
        def command_force_scan():
            """強制ディスカバリー要求"""
            self.bridge.submit_command("force_scan")
            return jsonify({"accepted": True, "command": "force_scan"}), 202

        @self.app.route('/commands/compatibility_test', methods=['POST'])
        def command_compatibility_test():
            """デバイス互換性テスト要求（verify指定で手動デバイスも検証）"""
            payload = request.get_json(silent=True) or {}
            self.bridge.submit_command("compatibility_test", {
                "targets": payload.get("devices"),
                "verify": bool(payload.get("verify", False)),
            })
            return jsonify({"accepted": True, "command": "compatibility_test"}), 202

        @self.app.route('/commands/buffer_bounds', methods=['POST'])
        def command_buffer_bounds():
            """バッファ範囲変更要求"""
            payload = request.get_json(silent=True) or {}
            if "min_buffer_size" not in payload and "max_buffer_size" not in payload:
                return jsonify({"error": "min_buffer_size or max_buffer_size required"}), 400

            future = self.bridge.submit_command("buffer_bounds", {
                key: payload[key] for key in ("min_buffer_size", "max_buffer_size")
                if key in payload
            })
            try:
                decision = future.result(timeout=COMMAND_WAIT_TIMEOUT)
            except TuningApplicationError as e:
                logger.warning(f"[HTTP] Buffer bounds rejected: {e}")
                return jsonify({"accepted": False, "error": str(e)}), 400
            except FuturesTimeout:
                return jsonify({"accepted": True, "pending": True}), 202
            return jsonify({"accepted": True, "decision": decision.to_dict()})

    def initialize(self):
        """HTTPサーバー初期化"""
        try:
            logger.info(f"[HTTP] Initializing HTTP server on port {self.port}")
            self.running = True
            logger.info("[HTTP] HTTP server initialized successfully")
            return True
        except Exception as e:
            logger.error(f"[HTTP] HTTP server initialization failed: {e}")
            return False

    def start_server(self):
        """HTTPサーバー開始"""
        def run_server():
            try:
                logger.info(f"[HTTP] Starting HTTP server on {self.host}:{self.port}")
                self.app.run(
                    host=self.host,
                    port=self.port,
                    debug=False,
                    threaded=True,
                    use_reloader=False
                )
            except Exception as e:
                logger.error(f"[HTTP] Server run error: {e}")
                self.running = False

        if not self.server_thread or not self.server_thread.is_alive():
            self.server_thread = threading.Thread(target=run_server, daemon=True)
            self.server_thread.start()
            logger.info("[HTTP] HTTP server thread started")

    def get_available_endpoints(self):
        """利用可能エンドポイント一覧"""
        return sorted(rule.rule for rule in self.app.url_map.iter_rules()
                      if rule.endpoint != "static")

    def cleanup(self):
        """リソース解放"""
        logger.info("[HTTP] Stopping HTTP server...")
        self.running = False

    def __del__(self):
        """デストラクタ"""
        self.cleanup()
