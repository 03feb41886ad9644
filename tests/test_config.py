"""
設定読み込み・検証のテスト

期待される動作:
- 不正・範囲外の値は既定値へ補正（起動は継続）
- 明示指定した設定ファイルが読めない場合のみ致命的エラー
"""
import pytest
from unittest.mock import patch


class TestSettingValidation:
    """設定値検証のテスト"""

    def test_buffer_bounds_accepts_hard_limits(self):
        """ハード上限/下限ちょうどは許可"""
        from airsonos_bridge.config import check_buffer_bounds

        assert check_buffer_bounds(64, 2048) == (64, 2048)

    @pytest.mark.parametrize("min_size,max_size", [
        (300, 200),
        (32, 500),
        (200, 4096),
        ("200", 500),
    ])
    def test_buffer_bounds_rejects_invalid(self, min_size, max_size):
        """逆転・範囲外・非数値の拒否"""
        from airsonos_bridge.config import check_buffer_bounds
        from airsonos_bridge.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            check_buffer_bounds(min_size, max_size)

    def test_timeout_range(self):
        """タイムアウトは1-300秒"""
        from airsonos_bridge.config import check_timeout
        from airsonos_bridge.errors import ConfigurationError

        assert check_timeout(10) == 10
        with pytest.raises(ConfigurationError):
            check_timeout(0)
        with pytest.raises(ConfigurationError):
            check_timeout(301)


class TestParseConfig:
    """設定ドキュメント解析のテスト"""

    def test_empty_document_uses_defaults(self):
        """空ドキュメントは既定値"""
        from airsonos_bridge.config import parse_config

        config = parse_config(None)

        assert config.basic.timeout == 5
        assert config.audio.min_buffer_size == 200
        assert config.audio.max_buffer_size == 500
        assert config.performance.max_workers == 4
        assert config.devices == []

    def test_inverted_buffer_bounds_reset_to_defaults(self):
        """min > max は既定範囲へ補正"""
        from airsonos_bridge.config import parse_config

        config = parse_config({"audio": {"min_buffer_size": 600, "max_buffer_size": 300}})

        assert config.audio.min_buffer_size == 200
        assert config.audio.max_buffer_size == 500

    def test_out_of_range_value_falls_back(self):
        """範囲外の値は既定値、他の値は保持"""
        from airsonos_bridge.config import parse_config

        config = parse_config({"basic": {"timeout": 0, "max_devices": 10}})

        assert config.basic.timeout == 5
        assert config.basic.max_devices == 10

    def test_boolean_strings(self):
        """真偽値の文字列表現"""
        from airsonos_bridge.config import parse_config

        config = parse_config({
            "basic": {"verbose": "yes"},
            "audio": {"adaptive_buffering": "off"},
        })

        assert config.basic.verbose is True
        assert config.audio.adaptive_buffering is False

    def test_unknown_keys_ignored(self):
        """未知のキーは無視"""
        from airsonos_bridge.config import parse_config

        config = parse_config({"basic": {"colour": "blue", "port": 5001}})

        assert config.basic.port == 5001
        assert not hasattr(config.basic, "colour")

    def test_manual_devices_deduplicated(self):
        """手動デバイスは(host, port)で重複排除"""
        from airsonos_bridge.config import parse_config

        config = parse_config({"devices": [
            {"host": "192.168.1.50", "name": "Kitchen"},
            {"host": "192.168.1.50", "port": 1400},
            {"host": "192.168.1.51", "port": 1443},
            {"name": "missing host"},
        ]})

        assert [(d.host, d.port) for d in config.devices] == [
            ("192.168.1.50", 1400),
            ("192.168.1.51", 1443),
        ]
        assert config.devices[0].name == "Kitchen"
        assert config.devices[1].name == "Sonos-192.168.1.51"

    def test_policy_mapping_merged(self):
        """重み設定は既定値へマージ"""
        from airsonos_bridge.config import parse_config

        config = parse_config({"tuning": {"score_weights": {"cpu": 0.3}, "tuning_cooldown": 45}})

        assert config.tuning.score_weights["cpu"] == 0.3
        assert config.tuning.score_weights["audio"] == 0.30
        assert config.tuning.tuning_cooldown == 45.0


class TestLoadConfig:
    """設定ファイル読み込みのテスト"""

    def test_load_yaml_file(self, tmp_path):
        """YAMLファイル読み込み"""
        from airsonos_bridge.config import load_config

        path = tmp_path / "airsonos.yaml"
        path.write_text(
            "basic:\n"
            "  timeout: 8\n"
            "audio:\n"
            "  min_buffer_size: 250\n"
            "  max_buffer_size: 750\n"
            "devices:\n"
            "  - host: 10.0.0.5\n"
        )

        config = load_config(str(path))

        assert config.basic.timeout == 8
        assert config.audio.min_buffer_size == 250
        assert config.audio.max_buffer_size == 750
        assert config.devices[0].host == "10.0.0.5"

    def test_explicit_missing_file_is_fatal(self, tmp_path):
        """明示指定ファイルが存在しない場合はエラー"""
        from airsonos_bridge.config import load_config
        from airsonos_bridge.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_explicit_invalid_yaml_is_fatal(self, tmp_path):
        """不正なYAMLはエラー"""
        from airsonos_bridge.config import load_config
        from airsonos_bridge.errors import ConfigurationError

        path = tmp_path / "broken.yaml"
        path.write_text("basic: [unclosed\n")

        with pytest.raises(ConfigurationError):
            load_config(str(path))

    def test_missing_default_path_uses_defaults(self, tmp_path):
        """既定パスが無い場合は既定値で起動"""
        from airsonos_bridge import config as config_module

        with patch.object(config_module, "CONFIG_PATH", None), \
             patch.object(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "none.yaml"):
            config = config_module.load_config()

        assert config.basic.timeout == 5

    def test_env_overrides(self):
        """環境変数による上書き"""
        from airsonos_bridge import config as config_module

        original = (config_module.CONFIG_PATH, config_module.HTTP_SERVER_PORT,
                    config_module.LOG_LEVEL)
        env = {"AIRSONOS_CONFIG": "/tmp/custom.yaml", "HTTP_PORT": "9000", "LOG_LEVEL": "DEBUG"}
        try:
            with patch.dict("os.environ", env):
                config_module.load_env_config()
            assert config_module.CONFIG_PATH == "/tmp/custom.yaml"
            assert config_module.HTTP_SERVER_PORT == 9000
            assert config_module.LOG_LEVEL == "DEBUG"
        finally:
            (config_module.CONFIG_PATH, config_module.HTTP_SERVER_PORT,
             config_module.LOG_LEVEL) = original
