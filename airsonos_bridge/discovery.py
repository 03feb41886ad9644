"""
デバイスディスカバリーモジュール
標準(soco)・SSDP・mDNS(zeroconf)・サブネットスキャンを並列実行し、
(host, port)単位でマージしてレジストリへ登録する
"""

import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from concurrent.futures import TimeoutError as FuturesTimeout
from urllib.parse import urlparse

import soco
from zeroconf import ServiceBrowser, Zeroconf

from .config import *
from .errors import DeviceCommunicationError, DiscoveryError
from .models import DeviceRecord, DiscoveryMethod
from .network_diagnostics import local_ipv4_networks, tcp_probe

logger = logging.getLogger(__name__)

AUTO_METHODS = (
    DiscoveryMethod.STANDARD,
    DiscoveryMethod.SSDP,
    DiscoveryMethod.MDNS,
    DiscoveryMethod.SCAN,
)

BASE_AUDIO_FORMATS = ["pcm", "mp3", "aac"]


def merge_results(results):
    """手法別結果を(host, port)でマージ

    results: {DiscoveryMethod: [DeviceRecord, ...]}
    メタデータ競合は手法優先度（manual > standard > ssdp > mdns > scan）で解決。
    """
    merged = {}
    ordered = sorted(results.items(), key=lambda item: item[0].priority, reverse=True)
    for method, records in ordered:
        for record in records or []:
            record.method = method
            current = merged.get(record.key)
            if current is None:
                merged[record.key] = record
                continue
            # 高優先度側を残し、欠けている情報のみ補完
            current.name = current.name or record.name
            current.model = current.model or record.model
            for key, value in record.capabilities.items():
                current.capabilities.setdefault(key, value)
            current.verified = current.verified or record.verified
    return list(merged.values())


def parse_ssdp_response(data, address=None):
    """M-SEARCH応答からDeviceRecord生成（Sonos以外はNone）"""
    text = data.decode("utf-8", errors="ignore") if isinstance(data, bytes) else data
    if "Sonos" not in text and "ZonePlayer" not in text:
        return None

    headers = {}
    for line in text.split("\r\n")[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().upper()] = value.strip()

    host, port = address, SONOS_PORT
    location = headers.get("LOCATION")
    if location:
        parsed = urlparse(location)
        host = parsed.hostname or host
        port = parsed.port or port
    if not host:
        return None

    return DeviceRecord(host=host, port=port, name=f"Sonos-{host}",
                        method=DiscoveryMethod.SSDP)


class _SonosServiceListener:
    """zeroconfサービスリスナー（名前のみ収集）"""

    def __init__(self):
        self.names = set()
        self.lock = threading.Lock()

    def add_service(self, zc, type_, name):
        with self.lock:
            self.names.add(name)

    def update_service(self, zc, type_, name):
        self.add_service(zc, type_, name)

    def remove_service(self, zc, type_, name):
        with self.lock:
            self.names.discard(name)


class DiscoveryEngine:
    """マルチプロトコルデバイスディスカバリークラス"""

    def __init__(self, registry, config=None, clock=time.monotonic,
                 probes=None, speaker_factory=None):
        self.registry = registry
        self.config = config or BridgeConfig()
        self.clock = clock
        self.speaker_factory = speaker_factory or soco.SoCo
        self.probes = {
            DiscoveryMethod.STANDARD: self.standard_discovery,
            DiscoveryMethod.SSDP: self.ssdp_discovery,
            DiscoveryMethod.MDNS: self.mdns_discovery,
            DiscoveryMethod.SCAN: self.scan_discovery,
        }
        if probes:
            self.probes.update(probes)
        self.last_results = {}
        self.last_discovery = None

    def register_manual_devices(self):
        """設定ファイルの手動デバイスを登録"""
        records = []
        now = self.clock()
        for device in self.config.devices:
            record = DeviceRecord(
                host=device.host,
                port=device.port,
                name=device.name,
                method=DiscoveryMethod.MANUAL,
                manual=True,
            )
            records.append(self.registry.upsert(record, now=now))
        if records:
            logger.info(f"[DISCOVERY] Registered {len(records)} manual device(s)")
        return records

    def register_results(self, records):
        """マージ済み結果をレジストリへ登録"""
        now = self.clock()
        stored = [self.registry.upsert(record, now=now) for record in records]
        self.last_discovery = now
        logger.info(f"[DISCOVERY] Discovery complete: {len(stored)} device(s)")
        return stored

    def discover(self, methods=None, timeout=None, register=True):
        """指定手法を並列実行してレジストリへ登録

        個々の手法の失敗はその手法の空結果となり、全体は失敗しない。
        register=Falseの場合はマージ結果のみを返す（制御スレッドで登録する場合）。
        """
        methods = [self._to_method(m) for m in (methods or AUTO_METHODS)]
        timeout = timeout or self.config.basic.discovery_timeout
        logger.info(f"[DISCOVERY] Starting discovery: "
                    f"{', '.join(m.value for m in methods)} (timeout {timeout}s)")

        results = {}
        errors = {}
        executor = ThreadPoolExecutor(max_workers=max(len(methods), 1))
        try:
            futures = {executor.submit(self._run_probe, method, timeout): method
                       for method in methods}
            done, pending = wait(futures, timeout=timeout + 1.0)
            for future in done:
                method, records, error = future.result()
                results[method] = records
                if error:
                    errors[method] = error
            for future in pending:
                method = futures[future]
                future.cancel()
                results[method] = []
                errors[method] = "timed out"
                logger.warning(f"[DISCOVERY] {method.value} discovery timed out")
        finally:
            executor.shutdown(wait=False)

        merged = merge_results(results)
        max_devices = self.config.basic.max_devices
        if len(merged) > max_devices:
            logger.warning(f"[DISCOVERY] {len(merged)} devices found, keeping {max_devices}")
            merged = merged[:max_devices]

        self.last_results = {
            method.value: {
                "count": len(results.get(method, [])),
                "error": errors.get(method),
            }
            for method in methods
        }
        if not register:
            return merged
        return self.register_results(merged)

    def _to_method(self, method):
        if isinstance(method, DiscoveryMethod):
            return method
        try:
            return DiscoveryMethod(str(method).lower())
        except ValueError:
            raise DiscoveryError(method, "unknown discovery method")

    def _run_probe(self, method, timeout):
        """1手法実行（結果またはエラーを返す）"""
        probe = self.probes.get(method)
        if probe is None:
            return method, [], "no probe registered"
        try:
            records = list(probe(timeout) or [])
            logger.debug(f"[DISCOVERY] {method.value}: {len(records)} device(s)")
            return method, records, None
        except Exception as e:
            error = e if isinstance(e, DiscoveryError) else DiscoveryError(method.value, e)
            logger.warning(f"[DISCOVERY] {error}")
            return method, [], str(error)

    def standard_discovery(self, timeout):
        """sonosアナウンスによる標準ディスカバリー"""
        speakers = soco.discover(timeout=max(int(timeout), 1), allow_network_scan=False)
        records = []
        for speaker in speakers or []:
            host = speaker.ip_address
            try:
                name = speaker.player_name
            except Exception as e:
                logger.debug(f"[DISCOVERY] Player name unavailable for {host}: {e}")
                name = f"Sonos-{host}"
            records.append(DeviceRecord(host=host, port=SONOS_PORT, name=name,
                                        method=DiscoveryMethod.STANDARD, verified=True))
        return records

    def ssdp_discovery(self, timeout):
        """SSDP M-SEARCHによるディスカバリー"""
        message = "\r\n".join([
            "M-SEARCH * HTTP/1.1",
            f"HOST: {SSDP_ADDRESS}:{SSDP_PORT}",
            'MAN: "ssdp:discover"',
            f"ST: {SSDP_SEARCH_TARGET}",
            "MX: 3",
            "",
            "",
        ]).encode("utf-8")

        records = {}
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            sock.sendto(message, (SSDP_ADDRESS, SSDP_PORT))
            deadline = time.monotonic() + timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                sock.settimeout(remaining)
                try:
                    data, address = sock.recvfrom(4096)
                except socket.timeout:
                    break
                record = parse_ssdp_response(data, address[0])
                if record:
                    records.setdefault(record.key, record)
        except OSError as e:
            raise DiscoveryError(DiscoveryMethod.SSDP.value, e)
        finally:
            sock.close()
        return list(records.values())

    def mdns_discovery(self, timeout):
        """mDNSブラウズ（_sonos._tcp.local.）"""
        zc = Zeroconf()
        listener = _SonosServiceListener()
        records = []
        try:
            browser = ServiceBrowser(zc, MDNS_SERVICE_TYPE, listener)
            time.sleep(min(timeout, 3.0))
            browser.cancel()

            with listener.lock:
                names = sorted(listener.names)
            for name in names:
                info = zc.get_service_info(MDNS_SERVICE_TYPE, name, timeout=1000)
                if info is None:
                    continue
                addresses = info.parsed_addresses()
                if not addresses:
                    continue
                label = name.replace("." + MDNS_SERVICE_TYPE, "")
                records.append(DeviceRecord(host=addresses[0], port=info.port or SONOS_PORT,
                                            name=label, method=DiscoveryMethod.MDNS))
        finally:
            zc.close()
        return records

    def scan_discovery(self, timeout):
        """ローカルサブネットのTCP 1400番スキャン"""
        hosts = []
        for network in local_ipv4_networks():
            for address in network.hosts():
                hosts.append(str(address))
                if len(hosts) >= SCAN_MAX_HOSTS:
                    break
            if len(hosts) >= SCAN_MAX_HOSTS:
                break

        if not hosts:
            raise DiscoveryError(DiscoveryMethod.SCAN.value, "no local IPv4 network")

        probe_timeout = min(1.0, timeout)
        records = []
        executor = ThreadPoolExecutor(max_workers=SCAN_CONCURRENCY)
        try:
            futures = {executor.submit(tcp_probe, host, SONOS_PORT, probe_timeout): host
                       for host in hosts}
            try:
                for future in as_completed(futures, timeout=timeout):
                    host = futures[future]
                    try:
                        future.result()
                    except DeviceCommunicationError:
                        continue
                    records.append(DeviceRecord(host=host, port=SONOS_PORT,
                                                name=f"Sonos-{host}",
                                                method=DiscoveryMethod.SCAN))
            except FuturesTimeout:
                logger.debug(f"[DISCOVERY] Subnet scan stopped after {timeout}s")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return records

    # =========================================================================
    # 互換性テスト
    # =========================================================================

    def test_device_compatibility(self, targets=None, verify=False, write_back=True):
        """デバイス互換性テスト（接続・プロトコル・音声形式・機能）

        各デバイスのテストは並列実行し、結果のみを返す。
        write_back=Trueの場合は呼び出しスレッドでレジストリへ反映する
        （制御スレッド外で実行する場合はFalseとし apply_compatibility_reports を別途呼ぶ）。
        """
        targets = [self._to_target(t) for t in (targets if targets is not None
                                                else self.registry.all())]
        if not targets:
            return {}

        reports = {}
        with ThreadPoolExecutor(max_workers=min(len(targets), 8)) as executor:
            futures = {executor.submit(self._test_single_device, host, port, verify):
                       f"{host}:{port}" for host, port in targets}
            for future in as_completed(futures):
                device_id = futures[future]
                try:
                    reports[device_id] = future.result()
                except Exception as e:
                    logger.warning(f"[DISCOVERY] Compatibility test failed for {device_id}: {e}")
                    reports[device_id] = {"device": device_id, "tested": False,
                                          "compatible": False, "issues": [str(e)]}

        if write_back:
            self.apply_compatibility_reports(reports)
        return reports

    def _to_target(self, target):
        if isinstance(target, DeviceRecord):
            return target.host, target.port
        if isinstance(target, (tuple, list)):
            return target[0], int(target[1])
        host, _, port = str(target).partition(":")
        return host, int(port) if port else SONOS_PORT

    def _test_single_device(self, host, port, verify):
        """1デバイスの互換性テスト（サブテスト失敗は問題として記録）"""
        existing = self.registry.get(host, port)
        if existing is not None and existing.manual and not verify:
            return {
                "device": existing.device_id,
                "manually_configured": True,
                "tested": False,
                "capabilities": dict(existing.capabilities),
            }

        report = {
            "device": f"{host}:{port}",
            "tested": True,
            "manually_configured": bool(existing and existing.manual),
            "connectivity": {},
            "protocol": {},
            "audio": {},
            "functional": {},
            "issues": [],
        }

        timeout = self.config.basic.timeout
        try:
            latency = tcp_probe(host, port, timeout)
            report["connectivity"] = {"status": "ok", "response_time_ms": round(latency, 1)}
        except DeviceCommunicationError as e:
            report["connectivity"] = {"status": "failed", "error": str(e)}
            report["issues"].append(f"connectivity: {e}")

        speaker = None
        model = ""
        try:
            speaker = self.speaker_factory(host)
            info = speaker.get_speaker_info()
            model = info.get("model_name", "")
            report["protocol"] = {
                "status": "ok",
                "model": model,
                "zone_name": info.get("zone_name", ""),
                "software_version": info.get("software_version", ""),
                "serial_number": info.get("serial_number", ""),
            }
        except Exception as e:
            report["protocol"] = {"status": "failed", "error": str(e)}
            report["issues"].append(f"protocol: {e}")

        report["audio"] = self._audio_formats(model, report["protocol"].get("zone_name", ""))
        if speaker is not None:
            report["functional"] = self._functional_tests(speaker, report["issues"])

        report["compatible"] = (report["connectivity"].get("status") == "ok"
                                and report["protocol"].get("status") == "ok")
        return report

    def _audio_formats(self, model, zone_name=""):
        """音声形式サポート（PLAY:1はALAC非対応）"""
        formats = list(BASE_AUDIO_FORMATS)
        alac = "PLAY:1" not in f"{model} {zone_name}".upper()
        if alac:
            formats.append("alac")
        return {"pcm": True, "mp3": True, "aac": True, "alac": alac, "formats": formats}

    def _functional_tests(self, speaker, issues):
        """音量・再生制御・グループ・メタデータ機能テスト"""
        tests = {
            "volume": lambda: speaker.volume,
            "transport": speaker.get_current_transport_info,
            "grouping": lambda: speaker.group,
            "metadata": speaker.get_current_track_info,
        }
        results = {}
        for name, test in tests.items():
            try:
                test()
                results[name] = True
            except Exception as e:
                results[name] = False
                issues.append(f"{name}: {e}")
        return results

    def apply_compatibility_reports(self, reports):
        """互換性テスト結果の能力フラグをレジストリへ反映（制御スレッドで呼び出す）"""
        updated = []
        now = self.clock()
        for device_id, report in reports.items():
            if not report.get("tested"):
                continue
            host, port = self._to_target(report.get("device", device_id))

            capabilities = {
                "audio_formats": report["audio"]["formats"],
                "alac": report["audio"]["alac"],
            }
            capabilities.update({f"{k}_control": v for k, v in report["functional"].items()})

            record = self.registry.get(host, port)
            if record is None:
                if not report["compatible"]:
                    continue
                record = self.registry.upsert(
                    DeviceRecord(host=host, port=port, name=f"Sonos-{host}",
                                 method=DiscoveryMethod.SCAN), now=now)
            record.capabilities.update(capabilities)
            record.model = report["protocol"].get("model") or record.model
            record.verified = report["compatible"]
            latency = report["connectivity"].get("response_time_ms")
            if latency is not None:
                record.record_latency(latency, now)
            updated.append(record)

        if updated:
            compatible = sum(1 for r in updated if r.verified)
            logger.info(f"[DISCOVERY] Compatibility results applied: "
                        f"{compatible}/{len(updated)} device(s) compatible")
        return updated
