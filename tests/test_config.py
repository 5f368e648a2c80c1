"""
설정 로드 테스트
"""
import pytest
from pydantic import ValidationError

from gcode_simulator.config import PlaybackConfig, get_default_config, load_config_from_env


class TestConfig:

    def test_defaults(self):
        config = get_default_config()
        assert config.chunk_size == 64 * 1024
        assert config.default_feed_rate == 1500.0
        assert config.absolute_positioning_default is True
        assert config.absolute_extrusion_default is False
        assert config.replay_batch_size == 1000
        assert config.tick_budget_ms == 16.0

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GCODE_SIM_CHUNK_SIZE", "4096")
        monkeypatch.setenv("GCODE_SIM_ABSOLUTE_EXTRUSION_DEFAULT", "true")
        monkeypatch.setenv("GCODE_SIM_SEEK_STALL_TIMEOUT", "2.5")

        config = load_config_from_env(str(tmp_path / "missing.env"))

        assert config.chunk_size == 4096
        assert config.absolute_extrusion_default is True
        assert config.seek_stall_timeout == 2.5
        assert config.default_feed_rate == 1500.0

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            PlaybackConfig(chunk_size=0)
        with pytest.raises(ValidationError):
            PlaybackConfig(replay_batch_size=-1)
