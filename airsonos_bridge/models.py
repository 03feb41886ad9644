"""
AirSonos Bridge データモデル定義
デバイス・バッファ状態・メトリクス・調整判断のデータクラスと列挙型
"""

import time
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from .config import (
    DEFAULT_MAX_BUFFER_MS,
    DEFAULT_MIN_BUFFER_MS,
    DEFAULT_TIMEOUT,
    WORKER_CEILING,
    BridgeConfig,
)

LATENCY_SAMPLE_LIMIT = 20


# =============================================================================
# 列挙型
# =============================================================================

class NetworkQuality(Enum):
    """ネットワーク品質ティア"""
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    UNKNOWN = "unknown"


class DiscoveryMethod(Enum):
    """ディスカバリー手法"""
    MANUAL = "manual"
    STANDARD = "standard"
    SSDP = "ssdp"
    MDNS = "mdns"
    SCAN = "scan"

    @property
    def priority(self) -> int:
        """メタデータ競合時の優先度（大きいほど優先）"""
        return _METHOD_PRIORITY[self]


_METHOD_PRIORITY = {
    DiscoveryMethod.MANUAL: 5,
    DiscoveryMethod.STANDARD: 4,
    DiscoveryMethod.SSDP: 3,
    DiscoveryMethod.MDNS: 2,
    DiscoveryMethod.SCAN: 1,
}


class Severity(Enum):
    """問題の重大度"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


# =============================================================================
# デバイス
# =============================================================================

@dataclass
class DeviceRecord:
    """スピーカーエンドポイント情報と信頼性メトリクス"""
    host: str
    port: int = 1400
    name: str = ""
    model: str = ""
    method: DiscoveryMethod = DiscoveryMethod.SCAN
    capabilities: Dict[str, Any] = field(default_factory=dict)
    reliability: float = 100.0
    latencies: Deque[float] = field(default_factory=lambda: deque(maxlen=LATENCY_SAMPLE_LIMIT))
    last_seen: Optional[float] = None
    error_count: int = 0
    recent_errors: Deque[float] = field(default_factory=deque)
    manual: bool = False
    verified: bool = False
    unreliable: bool = False
    online: bool = True
    timed_out: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.host, self.port)

    @property
    def device_id(self) -> str:
        return f"{self.host}:{self.port}"

    def average_latency(self) -> Optional[float]:
        if not self.latencies:
            return None
        return sum(self.latencies) / len(self.latencies)

    def record_latency(self, latency_ms, now):
        self.latencies.append(float(latency_ms))
        self.mark_seen(now)

    def mark_seen(self, now):
        self.last_seen = now
        self.online = True
        self.timed_out = False

    def to_dict(self) -> Dict[str, Any]:
        """JSON出力用辞書"""
        return {
            "id": self.device_id,
            "host": self.host,
            "port": self.port,
            "name": self.name,
            "model": self.model,
            "method": self.method.value,
            "capabilities": dict(self.capabilities),
            "reliability": round(self.reliability, 1),
            "average_latency_ms": self.average_latency(),
            "last_seen": self.last_seen,
            "error_count": self.error_count,
            "manual": self.manual,
            "verified": self.verified,
            "unreliable": self.unreliable,
            "online": self.online,
        }


# =============================================================================
# バッファ・メトリクス
# =============================================================================

@dataclass
class BufferState:
    """適応バッファ状態（プロセス内で単一）"""
    current_size: int = DEFAULT_MIN_BUFFER_MS
    min_size: int = DEFAULT_MIN_BUFFER_MS
    max_size: int = DEFAULT_MAX_BUFFER_MS
    underrun_count: int = 0
    overrun_count: int = 0
    last_adjustment: Optional[float] = None
    cooldown: float = 5.0

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class MetricSnapshot:
    """1ティック分のメトリクス（不変、replaceで差し替え）"""
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    memory_percent: float = 0.0
    audio_quality_score: float = 100.0
    dropout_count: int = 0
    network_quality: NetworkQuality = NetworkQuality.UNKNOWN
    network_latency_ms: Optional[float] = None
    per_device_metrics: Tuple[Tuple[str, float], ...] = ()
    timestamp: float = field(default_factory=time.time)

    def with_changes(self, **changes) -> "MetricSnapshot":
        return replace(self, **changes)

    def to_dict(self):
        data = asdict(self)
        data["network_quality"] = self.network_quality.value
        data["per_device_metrics"] = dict(self.per_device_metrics)
        return data


# =============================================================================
# 自動調整
# =============================================================================

@dataclass(frozen=True)
class OptimizationDelta:
    """設定変更デルタ（絶対目標値を保持）"""
    type: str
    values: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def create(cls, delta_type, **values):
        return cls(type=delta_type, values=tuple(sorted(values.items())))

    def get(self, key, default=None):
        return dict(self.values).get(key, default)

    def to_dict(self):
        return {"type": self.type, **dict(self.values)}


@dataclass(frozen=True)
class TuningDecision:
    """自動調整の適用記録"""
    trigger: str
    timestamp: float
    deltas: Tuple[OptimizationDelta, ...] = ()
    success: bool = True
    error: Optional[str] = None

    def to_dict(self):
        return {
            "trigger": self.trigger,
            "timestamp": self.timestamp,
            "deltas": [d.to_dict() for d in self.deltas],
            "success": self.success,
            "error": self.error,
        }


@dataclass
class PerformanceIssue:
    """検出された性能問題"""
    type: str
    severity: Severity
    value: Any = None

    def to_dict(self):
        return {"type": self.type, "severity": self.severity.value, "value": self.value}


@dataclass
class SystemCapabilityProfile:
    """起動時に検出したホスト能力"""
    cpu_cores: int = 1
    total_memory: int = 0
    available_memory: int = 0
    memory_usage_ratio: float = 0.0
    supports_workers: bool = False
    recommended_workers: int = 0
    recommended_buffer: Tuple[int, int] = (DEFAULT_MIN_BUFFER_MS, DEFAULT_MAX_BUFFER_MS)

    def to_dict(self):
        data = asdict(self)
        data["recommended_buffer"] = list(self.recommended_buffer)
        return data


# =============================================================================
# 実行時設定
# =============================================================================

@dataclass
class RuntimeConfig:
    """自動調整・サービス呼び出しが変更するライブ設定"""
    adaptive_buffering: bool = True
    min_buffer_size: int = DEFAULT_MIN_BUFFER_MS
    max_buffer_size: int = DEFAULT_MAX_BUFFER_MS
    enable_worker_threads: bool = True
    max_workers: int = WORKER_CEILING
    worker_ceiling: int = WORKER_CEILING
    timeout: int = DEFAULT_TIMEOUT
    health_check_interval: float = 30.0

    @classmethod
    def from_config(cls, config: BridgeConfig):
        return cls(
            adaptive_buffering=config.audio.adaptive_buffering,
            min_buffer_size=config.audio.min_buffer_size,
            max_buffer_size=config.audio.max_buffer_size,
            enable_worker_threads=config.performance.enable_worker_threads,
            max_workers=min(config.performance.max_workers, WORKER_CEILING),
            worker_ceiling=WORKER_CEILING,
            timeout=config.basic.timeout,
            health_check_interval=config.tuning.health_check_interval,
        )

    def snapshot(self):
        return replace(self)

    def restore(self, snapshot):
        for key, value in asdict(snapshot).items():
            setattr(self, key, value)

    def to_dict(self):
        return asdict(self)
