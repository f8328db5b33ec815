"""Configuration loading"""

import pytest
from chunkrelay.config import (
    MIB,
    TransferConfig,
    chunk_size_bytes,
    load_config,
)
from chunkrelay.exceptions import ConfigError


class TestTransferConfig:
    """Defaults, validation and YAML files"""

    def test_defaults(self):
        config = TransferConfig()
        assert config.chunk_size_mb == 9.5
        assert config.upload_concurrency == 1
        assert config.download_concurrency == 3
        assert config.safe_mode is True
        assert config.cooldown_seconds == 60

    def test_concurrency_follows_toggles(self):
        config = TransferConfig(parallel_uploads=True, upload_workers=4, parallel_downloads=False)
        assert config.upload_concurrency == 4
        assert config.download_concurrency == 1

    @pytest.mark.parametrize("values", [
        {'chunk_size_mb': 0},
        {'upload_workers': 0},
        {'jitter_ms': -1},
        {'poll_interval': 0},
    ])
    def test_invalid_values(self, values):
        with pytest.raises(ConfigError):
            TransferConfig(**values)

    def test_chunk_size_bytes(self):
        assert chunk_size_bytes(10) == 10 * MIB
        assert chunk_size_bytes(9.5) == 9961472

    def test_load_yaml(self, temp_dir):
        path = temp_dir / "chunkrelay.yaml"
        path.write_text(
            "chunk_size_mb: 49\n"
            "parallel_uploads: true\n"
            "upload_workers: 3\n"
            "not_an_option: 1\n"
        )

        config = load_config(path, chunk_size_mb=None, safe_mode=False)

        assert config.chunk_size_mb == 49
        assert config.upload_concurrency == 3
        assert config.safe_mode is False

    def test_overrides_win(self, temp_dir):
        path = temp_dir / "chunkrelay.yaml"
        path.write_text("chunk_size_mb: 49\n")
        assert load_config(path, chunk_size_mb=99).chunk_size_mb == 99

    def test_empty_file(self, temp_dir):
        path = temp_dir / "empty.yaml"
        path.write_text("")
        assert load_config(path) == TransferConfig()

    def test_bad_files(self, temp_dir):
        with pytest.raises(ConfigError):
            load_config(temp_dir / "missing.yaml")

        listing = temp_dir / "list.yaml"
        listing.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError):
            load_config(listing)

        broken = temp_dir / "broken.yaml"
        broken.write_text("chunk_size_mb: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(broken)

    def test_round_trip_dict(self):
        config = TransferConfig(jitter_ms=10)
        assert TransferConfig.from_dict(config.to_dict()) == config
