"""
ネットワーク診断モジュール
インターネット・ローカルネットワーク・マルチキャスト・ポート・DNS・遅延/ジッタ/帯域の
各チェックを並列実行し、品質ティアに分類する
"""

import ipaddress
import logging
import socket
import struct
import time
from concurrent.futures import ThreadPoolExecutor

import netifaces
import psutil

from .config import *
from .errors import DeviceCommunicationError
from .models import NetworkQuality

logger = logging.getLogger(__name__)


def classify_network_quality(latency_ms, jitter_ms=0.0, loss_percent=0.0, thresholds=None):
    """遅延・ジッタ・損失率から品質ティアを判定（単調な閾値）"""
    if latency_ms is None or latency_ms < 0:
        return NetworkQuality.UNKNOWN

    t = thresholds or QualityThresholds()
    jitter_ms = jitter_ms or 0.0
    loss_percent = loss_percent or 0.0

    if latency_ms < t.excellent_latency and jitter_ms < t.excellent_jitter \
            and loss_percent <= t.excellent_loss:
        return NetworkQuality.EXCELLENT
    if latency_ms < t.good_latency and jitter_ms < t.good_jitter \
            and loss_percent <= t.good_loss:
        return NetworkQuality.GOOD
    if latency_ms <= t.fair_latency and loss_percent <= t.fair_loss:
        return NetworkQuality.FAIR
    return NetworkQuality.POOR


def tcp_probe(host, port, timeout=DEFAULT_TIMEOUT):
    """TCP接続時間測定（ms）。失敗時はDeviceCommunicationError"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    started = time.monotonic()
    try:
        sock.connect((host, port))
        return (time.monotonic() - started) * 1000.0
    except (OSError, socket.timeout) as e:
        raise DeviceCommunicationError(host, port, str(e) or type(e).__name__)
    finally:
        sock.close()


def local_ipv4_interfaces():
    """ループバック以外のIPv4アドレス一覧 [(interface, address, netmask)]"""
    results = []
    for iface in netifaces.interfaces():
        for addr in netifaces.ifaddresses(iface).get(netifaces.AF_INET, []):
            address = addr.get("addr")
            if not address or address.startswith("127."):
                continue
            results.append((iface, address, addr.get("netmask", "255.255.255.0")))
    return results


def local_ipv4_networks(max_prefix=24):
    """スキャン対象サブネット（/24より広いネットワークは/24に縮小）"""
    networks = []
    for _, address, netmask in local_ipv4_interfaces():
        try:
            network = ipaddress.IPv4Network(f"{address}/{netmask}", strict=False)
        except ValueError:
            continue
        if network.prefixlen < max_prefix:
            network = ipaddress.IPv4Network(f"{address}/{max_prefix}", strict=False)
        if network not in networks:
            networks.append(network)
    return networks


class NetworkDiagnostics:
    """ネットワーク診断クラス"""

    def __init__(self, config=None, ports=None, dns_names=None,
                 internet_host=INTERNET_PROBE_HOST, internet_port=INTERNET_PROBE_PORT,
                 check_timeout=3.0, probe_count=LATENCY_PROBE_COUNT):
        self.config = config or BridgeConfig()
        self.ports = list(ports or DIAGNOSTIC_PORTS)
        self.dns_names = list(dns_names or DIAGNOSTIC_DNS_NAMES)
        self.internet_host = internet_host
        self.internet_port = internet_port
        self.check_timeout = check_timeout
        self.probe_count = probe_count
        self.last_report = None

    def run_diagnostics(self):
        """全チェック並列実行"""
        logger.info("[NETWORK] Running network diagnostics...")

        checks = {
            "internet": self.check_internet,
            "local_network": self.check_local_network,
            "multicast": self.check_multicast,
            "ports": self.check_ports,
            "dns": self.check_dns,
            "performance": self.check_performance,
        }

        results = {}
        with ThreadPoolExecutor(max_workers=len(checks)) as executor:
            futures = {name: executor.submit(self._guarded, name, check)
                       for name, check in checks.items()}
            for name, future in futures.items():
                results[name] = future.result()

        performance = results["performance"]
        quality = performance.get("quality", NetworkQuality.UNKNOWN.value)

        report = {
            "timestamp": time.time(),
            "connectivity": {
                "internet": results["internet"],
                "local_network": results["local_network"],
            },
            "multicast": results["multicast"],
            "ports": results["ports"],
            "dns": results["dns"],
            "performance": performance,
            "quality": quality,
        }
        self.last_report = report
        logger.info(f"[NETWORK] Diagnostics complete - quality: {quality}")
        return report

    def _guarded(self, name, check):
        """サブチェック実行（例外はerrorフィールドに変換）"""
        try:
            return check()
        except Exception as e:
            logger.warning(f"[NETWORK] {name} check failed: {e}")
            return {"status": "error", "error": str(e)}

    def check_internet(self):
        """インターネット到達性"""
        try:
            latency = tcp_probe(self.internet_host, self.internet_port, self.check_timeout)
            return {"status": "ok", "reachable": True, "latency_ms": round(latency, 1)}
        except DeviceCommunicationError as e:
            return {"status": "failed", "reachable": False, "error": str(e)}

    def check_local_network(self):
        """ローカルネットワーク（非ループバックIPv4）確認"""
        interfaces = local_ipv4_interfaces()
        return {
            "status": "ok" if interfaces else "failed",
            "reachable": bool(interfaces),
            "addresses": [address for _, address, _ in interfaces],
        }

    def check_multicast(self):
        """マルチキャスト参加可否（SSDPグループ）"""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.settimeout(self.check_timeout)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("", 0))
            membership = struct.pack("4s4s", socket.inet_aton(SSDP_ADDRESS),
                                     socket.inet_aton("0.0.0.0"))
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
            return {"status": "ok", "supported": True}
        except OSError as e:
            return {"status": "failed", "supported": False, "error": str(e)}
        finally:
            sock.close()

    def check_ports(self):
        """ポート使用可否"""
        ports = {}
        for port in self.ports:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.bind(("0.0.0.0", port))
                ports[port] = True
            except OSError:
                ports[port] = False
            finally:
                sock.close()
        status = "ok" if all(ports.values()) else "partial"
        return {"status": status, "available": ports}

    def check_dns(self):
        """DNS名前解決"""
        resolved = {}
        errors = {}
        started = time.monotonic()
        for name in self.dns_names:
            try:
                resolved[name] = socket.gethostbyname(name)
            except OSError as e:
                errors[name] = str(e)
        elapsed = (time.monotonic() - started) * 1000.0
        result = {
            "status": "ok" if not errors else "failed",
            "resolved": resolved,
            "latency_ms": round(elapsed, 1),
        }
        if errors:
            result["error"] = "; ".join(f"{k}: {v}" for k, v in errors.items())
        return result

    def check_performance(self, host=None, port=None):
        """遅延・ジッタ・損失率・帯域測定"""
        host = host or self.internet_host
        port = port or self.internet_port

        counters_before = psutil.net_io_counters()
        window_started = time.monotonic()

        samples = []
        failures = 0
        for _ in range(self.probe_count):
            try:
                samples.append(tcp_probe(host, port, self.check_timeout))
            except DeviceCommunicationError:
                failures += 1

        window = max(time.monotonic() - window_started, 1e-3)
        counters_after = psutil.net_io_counters()
        transferred = (counters_after.bytes_sent - counters_before.bytes_sent) + \
            (counters_after.bytes_recv - counters_before.bytes_recv)

        latency = sum(samples) / len(samples) if samples else None
        jitter = 0.0
        if len(samples) > 1:
            jitter = sum(abs(b - a) for a, b in zip(samples, samples[1:])) / (len(samples) - 1)
        loss = failures / self.probe_count * 100.0 if self.probe_count else 0.0

        quality = classify_network_quality(latency, jitter, loss, self.config.quality)
        return {
            "status": "ok" if samples else "failed",
            "latency_ms": round(latency, 1) if latency is not None else None,
            "jitter_ms": round(jitter, 1),
            "loss_percent": round(loss, 1),
            "bandwidth_bps": int(transferred * 8 / window),
            "quality": quality.value,
        }

    def troubleshooting_report(self, device_count=0, profile=None):
        """直近の診断結果から問題点と推奨事項を生成"""
        report = self.last_report or {}
        issues = []
        recommendations = []

        internet = report.get("connectivity", {}).get("internet", {})
        if not internet.get("reachable"):
            issues.append({
                "severity": "high",
                "category": "network",
                "issue": "No internet connectivity detected",
                "solution": "Check your internet connection and network settings",
            })

        if not report.get("multicast", {}).get("supported"):
            issues.append({
                "severity": "medium",
                "category": "network",
                "issue": "Multicast not supported",
                "solution": "Device discovery may be limited. Consider manual device configuration.",
            })

        if profile is not None and profile.memory_usage_ratio > 0.9:
            issues.append({
                "severity": "medium",
                "category": "system",
                "issue": "High memory usage detected",
                "solution": "Consider reducing buffer sizes or disabling worker threads",
            })

        if device_count == 0:
            issues.append({
                "severity": "high",
                "category": "devices",
                "issue": "No Sonos devices found",
                "solution": "Ensure Sonos devices are powered on and connected to the same network",
            })

        if profile is not None and profile.cpu_cores >= 4:
            recommendations.append({
                "category": "performance",
                "recommendation": "Enable worker threads for better audio processing performance",
                "impact": "high",
            })

        if report.get("quality") == NetworkQuality.POOR.value:
            recommendations.append({
                "category": "network",
                "recommendation": "Increase buffer sizes to compensate for poor network performance",
                "impact": "medium",
            })

        return {
            "timestamp": time.time(),
            "network": report,
            "system": profile.to_dict() if profile is not None else None,
            "device_count": device_count,
            "issues": issues,
            "recommendations": recommendations,
        }
