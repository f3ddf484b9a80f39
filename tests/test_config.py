import pytest
from pydantic import ValidationError

import closurekit
from closurekit import CONFIG, ConfigModel
from closurekit.config import SigningConfigModel, active_config, using


class TestVersion:

    def test_version_matches_project(self, load_pyproject_toml):
        assert closurekit.__version__ == load_pyproject_toml["project"]["version"]


class TestConfigModel:

    def test_defaults(self):
        config = ConfigModel()

        assert config.SIGNING.KEY is None
        assert config.SIGNING.ALGORITHM == "sha256"
        assert config.CAPTURE.TRANSFORM is None
        assert config.RECONSTRUCT.RESOLVER is None
        assert config.RECONSTRUCT.CODE_CACHE_SIZE > 0

    def test_string_key_is_encoded(self):
        config = ConfigModel()

        config.set_signing_key("secret")

        assert config.SIGNING.KEY == b"secret"

    def test_sections_are_not_shared(self):
        first, second = ConfigModel(), ConfigModel()

        first.set_signing_key(b"key")

        assert second.SIGNING.KEY is None

    def test_reset(self):
        config = ConfigModel()
        config.set_signing_key(b"key")
        config.set_capture_transform(dict)
        config.RECONSTRUCT.MAX_SOURCE_LENGTH = 1

        config.reset()

        assert config.SIGNING.KEY is None
        assert config.CAPTURE.TRANSFORM is None
        assert config.RECONSTRUCT.MAX_SOURCE_LENGTH == ConfigModel().RECONSTRUCT.MAX_SOURCE_LENGTH

    def test_unknown_algorithm(self):
        with pytest.raises(ValidationError):
            SigningConfigModel(ALGORITHM="not-a-hash")

        with pytest.raises(ValidationError):
            ConfigModel().SIGNING.ALGORITHM = "not-a-hash"


class TestActiveConfig:

    def test_global_by_default(self):
        assert active_config() is CONFIG

    def test_explicit_wins(self):
        config = ConfigModel()

        assert active_config(config) is config

    def test_using(self):
        config = ConfigModel()

        with using(config) as active:
            assert active is config
            assert active_config() is config

        assert active_config() is CONFIG

    def test_module_level_hooks_set_global_config(self):
        transform = lambda use: use

        closurekit.set_signing_key("secret")
        closurekit.set_capture_transform(transform)
        closurekit.set_capture_resolver(transform)

        assert CONFIG.SIGNING.KEY == b"secret"
        assert CONFIG.CAPTURE.TRANSFORM is transform
        assert CONFIG.RECONSTRUCT.RESOLVER is transform
