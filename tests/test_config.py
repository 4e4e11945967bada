"""
Configuration tests: defaults, environment binding, YAML loading with schema
validation, dotted-path access and redaction.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest
import yaml
from jsonschema import Draft202012Validator

from lockstep.bridge.config import (
    BridgeConfig,
    ConfigError,
    ConfigManager,
    ConfigValue,
    ValidationError,
    config_json_schema,
    get_config,
    validate_document,
)


class TestConfigValue:
    """Single values with env binding and validation."""

    def test_default_and_override(self):
        value = ConfigValue(default=3, validator=lambda x: x > 0)
        assert value.get() == 3
        value.set(5)
        assert value.get() == 5
        value.reset()
        assert value.get() == 3

    def test_validator_rejects(self):
        value = ConfigValue(default=1.2, validator=lambda x: 1.0 <= x <= 5.0)
        with pytest.raises(ValidationError):
            value.set(9.0)

    def test_environment_wins(self, monkeypatch):
        value = ConfigValue(default=1, env_var="LOCKSTEP_TEST_VALUE")
        value.set(2)
        monkeypatch.setenv("LOCKSTEP_TEST_VALUE", "7")
        assert value.get() == 7

    def test_string_coercion(self):
        flag = ConfigValue(default=False)
        flag.set("yes")
        assert flag.get() is True
        number = ConfigValue(default=1.0)
        number.set(2)
        assert isinstance(number.get(), float)
        with pytest.raises(ValidationError):
            ConfigValue(default=1).set("many")

    def test_change_callbacks(self):
        seen = []
        value = ConfigValue(default=1)
        value.on_change(lambda old, new: seen.append((old, new)))
        value.set(4)
        assert seen == [(None, 4)]


class TestBridgeConfig:
    """Defaults, serialization and schema."""

    def test_defaults(self):
        config = BridgeConfig()
        assert config.origin.name.get() == "ethereum"
        assert config.origin.chain_id.get() == 1
        assert config.mirror.name.get() == "megaeth"
        assert config.mirror.chain_id.get() == 42069
        assert config.mirror.min_balance.get() == 1.0
        assert config.relayer.gas_multiplier.get() == 1.2
        assert config.relayer.unlock_batch_size.get() == 1

    def test_secrets_are_redacted(self, monkeypatch):
        monkeypatch.setenv("LOCKSTEP_RELAYER_PRIVATE_KEY", "0x" + "ab" * 32)
        config = BridgeConfig()
        assert config.to_dict(redact=True)["relayer"]["private_key"] == "********"
        assert config.to_dict()["relayer"]["private_key"] == "0x" + "ab" * 32
        assert "ab" * 32 not in config.to_yaml()

    def test_yaml_round_trip_validates(self):
        document = yaml.safe_load(BridgeConfig().to_yaml(redact=False))
        assert validate_document(document) == []

    def test_schema_shape(self):
        schema = config_json_schema()
        Draft202012Validator.check_schema(schema)
        assert schema["additionalProperties"] is False
        relayer = schema["properties"]["relayer"]["properties"]
        assert relayer["gas_multiplier"]["x-env-var"] == "LOCKSTEP_GAS_MULTIPLIER"
        assert "default" not in relayer["private_key"]

    def test_unknown_keys_are_schema_errors(self):
        errors = validate_document({"relayer": {"gas_multiplyer": 2}})
        assert len(errors) == 1
        assert errors[0].startswith("relayer:")

    def test_apply_dict(self):
        config = BridgeConfig()
        config.apply_dict({"indexer": {"window_size": 50}, "relayer": {"gas_multiplier": 2}})
        assert config.indexer.window_size.get() == 50
        assert config.relayer.gas_multiplier.get() == 2.0
        with pytest.raises(ConfigError):
            config.apply_dict({"nope": {}})
        with pytest.raises(ValidationError):
            config.apply_dict({"indexer": {"window_size": 20000}})


class TestConfigManager:
    """The process-wide configuration singleton."""

    def test_singleton(self):
        assert ConfigManager() is ConfigManager()
        assert get_config() is ConfigManager().config

    def test_dotted_paths(self):
        manager = ConfigManager()
        manager.set("relayer.unlock_batch_size", 10)
        assert manager.get("relayer.unlock_batch_size") == 10
        with pytest.raises(ConfigError):
            manager.set("relayer.nonexistent", 1)
        with pytest.raises(ConfigError):
            manager.get("nowhere.at_all")
        with pytest.raises(ValidationError):
            manager.set("relayer.unlock_batch_size", 500)

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "lockstep.yaml"
        path.write_text(yaml.safe_dump({
            "mirror": {"name": "testnet", "min_balance": 0.5},
            "storage": {"database_url": "sqlite:///bridge.db"},
        }))
        manager = ConfigManager()
        manager.load_from_file(path)
        assert manager.get("mirror.name") == "testnet"
        assert manager.get("mirror.min_balance") == 0.5
        assert manager.get("storage.database_url") == "sqlite:///bridge.db"

    def test_bad_files(self, tmp_path):
        manager = ConfigManager()
        with pytest.raises(ConfigError):
            manager.load_from_file(tmp_path / "missing.yaml")
        bad = tmp_path / "bad.yaml"
        bad.write_text("relayer:\n  gas_multiplier: lots\n")
        with pytest.raises(ValidationError):
            manager.load_from_file(bad)

    def test_load_defaults_reads_working_directory(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert ConfigManager().load_defaults() is None
        (tmp_path / "lockstep.yaml").write_text("indexer:\n  window_size: 25\n")
        assert ConfigManager().load_defaults().name == "lockstep.yaml"
        assert ConfigManager().get("indexer.window_size") == 25

    def test_reload_notifies_watchers(self, tmp_path):
        path = tmp_path / "lockstep.yaml"
        path.write_text("indexer:\n  window_size: 10\n")
        manager = ConfigManager()
        manager.load_from_file(path)
        seen = []
        manager.watch(lambda config: seen.append(config.indexer.window_size.get()))
        path.write_text("indexer:\n  window_size: 20\n")
        manager.reload()
        assert seen == [20]

    def test_validate(self, monkeypatch):
        manager = ConfigManager()
        assert manager.validate() == []
        manager.set("mirror.name", "ethereum")
        monkeypatch.setenv("LOCKSTEP_GAS_MULTIPLIER", "9")
        errors = manager.validate()
        assert "origin.name and mirror.name must differ" in errors
        assert any(e.startswith("relayer.gas_multiplier") for e in errors)
