"""
設定管理モジュール
既定値（モジュール定数）・YAML設定ドキュメント読み込み・環境変数による上書き
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# プロジェクトルートディレクトリ
PROJECT_ROOT = Path(__file__).parent.parent

# 基本設定
DEFAULT_TIMEOUT = 5            # 秒
TIMEOUT_RANGE = (1, 300)
DEFAULT_AIRPLAY_PORT = 5000
DEFAULT_DISCOVERY_TIMEOUT = 10  # 秒
DEFAULT_MAX_DEVICES = 50
SONOS_PORT = 1400

# バッファ設定 (ms)
DEFAULT_MIN_BUFFER_MS = 200
DEFAULT_MAX_BUFFER_MS = 500
BUFFER_LIMIT_MIN_MS = 64
BUFFER_LIMIT_MAX_MS = 2048
BUFFER_STEP_MS = 50
UNDERRUN_THRESHOLD = 3
OVERRUN_THRESHOLD = 10
BUFFER_ADJUSTMENT_COOLDOWN = 5.0  # 秒

# ワーカー設定
WORKER_CEILING = 4
MEMORY_PRESSURE_RATIO = 0.8

# 音声フォーマット（AirPlayデコード後のPCM）
AUDIO_SAMPLE_RATE = 44100
AUDIO_CHANNELS = 2
AUDIO_BYTES_PER_SAMPLE = 2

# ディスカバリー・診断設定
SSDP_ADDRESS = "239.255.255.250"
SSDP_PORT = 1900
SSDP_SEARCH_TARGET = "urn:schemas-upnp-org:device:ZonePlayer:1"
MDNS_SERVICE_TYPE = "_sonos._tcp.local."
SCAN_MAX_HOSTS = 254
SCAN_CONCURRENCY = 32
DIAGNOSTIC_PORTS = [5000, 8099, 1400, 1401]
DIAGNOSTIC_DNS_NAMES = ["google.com", "apple.com"]
INTERNET_PROBE_HOST = "google.com"
INTERNET_PROBE_PORT = 80
LATENCY_PROBE_COUNT = 5

# HTTP制御サーバー設定
HTTP_SERVER_HOST = "0.0.0.0"
HTTP_SERVER_PORT = 8099

# システム設定
LOG_LEVEL = "INFO"
LOG_FILE = PROJECT_ROOT / "logs" / "airsonos_bridge.log"
PID_FILE = PROJECT_ROOT / "airsonos_bridge.pid"
DEFAULT_CONFIG_PATH = Path("/data/airsonos.yaml")
CONFIG_PATH = None


@dataclass
class BasicSettings:
    """基本設定"""
    timeout: int = DEFAULT_TIMEOUT
    verbose: bool = False
    port: int = DEFAULT_AIRPLAY_PORT
    discovery_timeout: int = DEFAULT_DISCOVERY_TIMEOUT
    max_devices: int = DEFAULT_MAX_DEVICES


@dataclass
class AudioSettings:
    """音声・バッファ設定"""
    adaptive_buffering: bool = True
    min_buffer_size: int = DEFAULT_MIN_BUFFER_MS
    max_buffer_size: int = DEFAULT_MAX_BUFFER_MS
    buffer_step: int = BUFFER_STEP_MS
    underrun_threshold: int = UNDERRUN_THRESHOLD
    overrun_threshold: int = OVERRUN_THRESHOLD
    adjustment_cooldown: float = BUFFER_ADJUSTMENT_COOLDOWN


@dataclass
class PerformanceSettings:
    """ワーカー設定"""
    enable_worker_threads: bool = True
    max_workers: int = WORKER_CEILING


@dataclass
class ManualDevice:
    """手動設定デバイス"""
    host: str
    port: int = SONOS_PORT
    name: str = ""


@dataclass
class MonitoringConfig:
    """監視間隔・アラート閾値"""
    sample_interval: float = 1.0
    network_interval: float = 10.0
    assessment_interval: float = 60.0
    cpu_alert_threshold: float = 80.0
    memory_alert_threshold: float = 85.0
    dropout_threshold: int = 5
    latency_threshold: float = 500.0
    auto_tuning_enabled: bool = True
    device_offline_after: float = 60.0
    device_timeout_after: float = 300.0
    device_silence_window: float = 300.0
    history_size: int = 3600


@dataclass
class QualityThresholds:
    """ネットワーク品質分類の閾値（単調）"""
    excellent_latency: float = 20.0
    excellent_jitter: float = 5.0
    excellent_loss: float = 0.5
    good_latency: float = 50.0
    good_jitter: float = 15.0
    good_loss: float = 1.0
    fair_latency: float = 150.0
    fair_loss: float = 2.0


@dataclass
class TuningPolicy:
    """自動調整ポリシー値"""
    dropout_penalty: float = 5.0
    underrun_penalty: float = 2.0
    overrun_penalty: float = 1.0
    quality_recovery_per_second: float = 1.0
    quality_recovery_delay: float = 10.0
    reliability_error_penalty: float = 5.0
    reliability_error_penalty_cap: float = 25.0
    error_frequency_window: float = 60.0
    reliability_connected_bonus: float = 2.0
    reliability_disconnect_penalty: float = 10.0
    unreliable_threshold: float = 50.0
    tuning_cooldown: float = 30.0
    decision_history_size: int = 100
    health_check_interval: float = 30.0
    score_weights: Dict[str, float] = field(default_factory=lambda: {
        "cpu": 0.25,
        "memory": 0.15,
        "audio": 0.30,
        "network": 0.20,
        "devices": 0.10,
    })
    network_tier_scores: Dict[str, float] = field(default_factory=lambda: {
        "excellent": 100.0,
        "good": 85.0,
        "fair": 60.0,
        "poor": 25.0,
        "unknown": 70.0,
    })


@dataclass
class BridgeConfig:
    """設定ドキュメント全体"""
    basic: BasicSettings = field(default_factory=BasicSettings)
    audio: AudioSettings = field(default_factory=AudioSettings)
    performance: PerformanceSettings = field(default_factory=PerformanceSettings)
    devices: List[ManualDevice] = field(default_factory=list)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    quality: QualityThresholds = field(default_factory=QualityThresholds)
    tuning: TuningPolicy = field(default_factory=TuningPolicy)


# 範囲チェック対象 (section, key) -> (下限, 上限)
_RANGES = {
    ("basic", "timeout"): TIMEOUT_RANGE,
    ("basic", "port"): (1, 65535),
    ("basic", "discovery_timeout"): (1, 300),
    ("basic", "max_devices"): (1, 500),
    ("audio", "min_buffer_size"): (BUFFER_LIMIT_MIN_MS, BUFFER_LIMIT_MAX_MS),
    ("audio", "max_buffer_size"): (BUFFER_LIMIT_MIN_MS, BUFFER_LIMIT_MAX_MS),
    ("audio", "buffer_step"): (1, 500),
    ("audio", "underrun_threshold"): (0, 1000),
    ("audio", "overrun_threshold"): (0, 1000),
    ("audio", "adjustment_cooldown"): (0, 3600),
    ("performance", "max_workers"): (1, 64),
    ("monitoring", "sample_interval"): (0.1, 60),
    ("tuning", "unreliable_threshold"): (0, 100),
    ("tuning", "tuning_cooldown"): (0, 86400),
}


def check_buffer_bounds(min_size, max_size):
    """バッファ範囲検証（設定・自動調整・サービス呼び出し共通）"""
    low, high = BUFFER_LIMIT_MIN_MS, BUFFER_LIMIT_MAX_MS
    for key, value in (("min_buffer_size", min_size), ("max_buffer_size", max_size)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{key} must be numeric", key, value)
        if not low <= value <= high:
            raise ConfigurationError(f"{key} {value} outside {low}-{high}", key, value)
    if min_size > max_size:
        raise ConfigurationError(
            f"min_buffer_size {min_size} > max_buffer_size {max_size}",
            "min_buffer_size", min_size)
    return int(min_size), int(max_size)


def check_timeout(value):
    """タイムアウト値検証（秒）"""
    low, high = TIMEOUT_RANGE
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError("timeout must be numeric", "timeout", value)
    if not low <= value <= high:
        raise ConfigurationError(f"timeout {value} outside {low}-{high}s", "timeout", value)
    return value


def _coerce(section, key, value, default):
    """既定値の型に合わせて変換し、範囲外なら例外"""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false", "yes", "no", "on", "off"):
            return value.lower() in ("true", "yes", "on")
        raise ConfigurationError(f"{section}.{key} must be boolean", key, value)

    if isinstance(default, (int, float)):
        if isinstance(value, bool):
            raise ConfigurationError(f"{section}.{key} must be numeric", key, value)
        try:
            number = type(default)(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{section}.{key} must be numeric", key, value)
        bounds = _RANGES.get((section, key))
        if bounds and not bounds[0] <= number <= bounds[1]:
            raise ConfigurationError(
                f"{section}.{key}={number} outside {bounds[0]}-{bounds[1]}", key, value)
        if number < 0:
            raise ConfigurationError(f"{section}.{key} must not be negative", key, value)
        return number

    if isinstance(default, dict):
        if not isinstance(value, dict):
            raise ConfigurationError(f"{section}.{key} must be a mapping", key, value)
        merged = dict(default)
        for sub_key, sub_value in value.items():
            if sub_key not in default:
                logger.warning(f"[CONFIG] Unknown key {section}.{key}.{sub_key} ignored")
                continue
            merged[sub_key] = _coerce(section, f"{key}.{sub_key}", sub_value, default[sub_key])
        return merged

    return value


def _read_section(document, name, cls):
    """セクション読み込み（不正値は既定値へ補正してログ出力）"""
    instance = cls()
    raw = document.get(name) or {}
    if not isinstance(raw, dict):
        logger.warning(f"[CONFIG] Section '{name}' is not a mapping - using defaults")
        return instance

    known = {f.name for f in fields(cls)}
    values = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning(f"[CONFIG] Unknown key {name}.{key} ignored")
            continue
        default = getattr(instance, key)
        try:
            values[key] = _coerce(name, key, value, default)
        except ConfigurationError as e:
            logger.warning(f"[CONFIG] {e} - using default {default!r}")

    return replace(instance, **values)


def _read_devices(document):
    """手動デバイス一覧読み込み"""
    devices = []
    seen = set()
    for entry in document.get("devices") or []:
        if not isinstance(entry, dict) or not entry.get("host"):
            logger.warning(f"[CONFIG] Invalid device entry ignored: {entry!r}")
            continue
        port = entry.get("port", SONOS_PORT)
        try:
            port = _coerce("basic", "port", port, SONOS_PORT)
        except ConfigurationError as e:
            logger.warning(f"[CONFIG] Device {entry['host']}: {e} - using {SONOS_PORT}")
            port = SONOS_PORT
        key = (str(entry["host"]), port)
        if key in seen:
            logger.warning(f"[CONFIG] Duplicate device {key[0]}:{key[1]} ignored")
            continue
        seen.add(key)
        devices.append(ManualDevice(
            host=key[0],
            port=port,
            name=str(entry.get("name") or f"Sonos-{key[0]}"),
        ))
    return devices


def parse_config(document):
    """設定ドキュメント(dict)からBridgeConfigを生成"""
    if document is None:
        document = {}
    if not isinstance(document, dict):
        logger.warning("[CONFIG] Configuration document is not a mapping - using defaults")
        document = {}

    audio = _read_section(document, "audio", AudioSettings)
    try:
        check_buffer_bounds(audio.min_buffer_size, audio.max_buffer_size)
    except ConfigurationError as e:
        logger.warning(f"[CONFIG] {e} - using defaults "
                       f"{DEFAULT_MIN_BUFFER_MS}-{DEFAULT_MAX_BUFFER_MS}ms")
        audio = replace(audio, min_buffer_size=DEFAULT_MIN_BUFFER_MS,
                        max_buffer_size=DEFAULT_MAX_BUFFER_MS)

    config = BridgeConfig(
        basic=_read_section(document, "basic", BasicSettings),
        audio=audio,
        performance=_read_section(document, "performance", PerformanceSettings),
        devices=_read_devices(document),
        monitoring=_read_section(document, "monitoring", MonitoringConfig),
        quality=_read_section(document, "quality", QualityThresholds),
        tuning=_read_section(document, "tuning", TuningPolicy),
    )
    return config


def load_config(path: Optional[str] = None) -> BridgeConfig:
    """設定ファイル読み込み

    pathを明示した場合、ファイルが存在しない・YAMLとして不正なときは
    ConfigurationErrorを送出する（起動時の唯一の致命的エラー）。
    既定パスが無い場合は既定値で起動する。
    """
    explicit = path is not None or CONFIG_PATH is not None
    config_path = Path(path or CONFIG_PATH or DEFAULT_CONFIG_PATH)

    if not config_path.exists():
        if explicit:
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        logger.info(f"[CONFIG] No configuration at {config_path} - using defaults")
        return BridgeConfig()

    try:
        with open(config_path, "r") as f:
            document = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        if explicit:
            raise ConfigurationError(f"Cannot read configuration {config_path}: {e}")
        logger.error(f"[CONFIG] Cannot read {config_path}: {e} - using defaults")
        return BridgeConfig()

    logger.info(f"[CONFIG] Configuration loaded from {config_path}")
    return parse_config(document)


# 環境変数からの設定上書き
def load_env_config():
    """環境変数から設定を読み込み"""
    global CONFIG_PATH, HTTP_SERVER_PORT, LOG_LEVEL

    if "AIRSONOS_CONFIG" in os.environ:
        CONFIG_PATH = os.environ["AIRSONOS_CONFIG"]

    if "HTTP_PORT" in os.environ:
        try:
            HTTP_SERVER_PORT = int(os.environ["HTTP_PORT"])
        except ValueError:
            logger.warning(f"[CONFIG] Invalid HTTP_PORT {os.environ['HTTP_PORT']!r} ignored")

    if "LOG_LEVEL" in os.environ:
        LOG_LEVEL = os.environ["LOG_LEVEL"]


# 初期化時に環境変数を読み込み
load_env_config()
