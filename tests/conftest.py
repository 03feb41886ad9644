"""
pytest設定とフィクスチャ定義
"""
import pytest
import sys
import os
from unittest.mock import MagicMock

# プロジェクトルートをパスに追加
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))


class FakeClock:
    """手動で進める単調時計"""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    """テスト用単調時計"""
    return FakeClock()

@pytest.fixture
def bridge_config():
    """既定値の設定"""
    from airsonos_bridge.config import BridgeConfig
    return BridgeConfig()

@pytest.fixture
def registry():
    """空のデバイスレジストリ"""
    from airsonos_bridge.device_registry import DeviceRegistry
    return DeviceRegistry()

@pytest.fixture
def mock_speaker():
    """Sonosスピーカーモックオブジェクト"""
    mock = MagicMock()
    mock.player_name = "Living Room"
    mock.get_speaker_info.return_value = {
        "zone_name": "Living Room",
        "model_name": "Sonos One",
        "software_version": "70.3-35220",
    }
    mock.volume = 20
    mock.get_current_transport_info.return_value = {"current_transport_state": "STOPPED"}
    mock.group = MagicMock()
    mock.get_current_track_info.return_value = {"title": ""}
    return mock

@pytest.fixture
def mock_process():
    """psutil.Processモック"""
    mock = MagicMock()
    mock.cpu_percent.return_value = 20.0
    mock.memory_info.return_value = MagicMock(rss=50 * 1024 * 1024)
    return mock

@pytest.fixture
def audio_test_data():
    """テスト用音声データ"""
    return b'\x00' * 4096  # 4KB のサイレント音声データ
