"""
例外定義モジュール

デバイス・プローブ単位のエラーは発生元で封じ込め、メトリクス/イベント経由でのみ
通知する。致命的になるのは起動時の設定エラー（既定値に戻せない場合）のみ。
"""


class BridgeError(Exception):
    """ブリッジ共通の基底例外"""


class ConfigurationError(BridgeError):
    """不正・範囲外の設定値（通常は既定値へ補正してログ出力）"""

    def __init__(self, message, key=None, value=None):
        super().__init__(message)
        self.key = key
        self.value = value


class DiscoveryError(BridgeError):
    """個別ディスカバリー手法の失敗"""

    def __init__(self, method, message):
        super().__init__(f"{method}: {message}")
        self.method = method


class DeviceCommunicationError(BridgeError):
    """デバイスとの通信失敗（タイムアウト・接続拒否）"""

    def __init__(self, host, port, message):
        super().__init__(f"{host}:{port}: {message}")
        self.host = host
        self.port = port


class ResourceSamplingError(BridgeError):
    """リソース読み取り失敗（そのティックはスキップ）"""


class TuningApplicationError(BridgeError):
    """最適化デルタの適用失敗"""

    def __init__(self, delta, message):
        super().__init__(f"{getattr(delta, 'type', delta)}: {message}")
        self.delta = delta
