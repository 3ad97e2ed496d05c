import pytest
import yaml

from barbot.core.errors import ValidationError
from barbot.core.settings import ModbusConfig, ModbusSettingsStore, default_config, validate_updates


def test_defaults_from_environment(monkeypatch):
    monkeypatch.setenv("MODBUS_HOST", "10.0.0.5")
    monkeypatch.setenv("MODBUS_PORT", "1502")
    monkeypatch.delenv("MODBUS_UNIT_ID", raising=False)
    monkeypatch.delenv("MODBUS_TIMEOUT", raising=False)

    config = default_config()
    assert config == ModbusConfig(host="10.0.0.5", port=1502, unit_id=1, timeout=5000)
    assert config.timeout_s == 5.0


def test_missing_file_uses_defaults(settings):
    assert settings.get().to_dict() == {"host": "127.0.0.1", "port": 5502, "unitId": 1, "timeout": 1000}


def test_update_persists_and_reloads(settings):
    settings.update({"host": "192.168.1.20", "port": "502", "unitId": 3, "timeout": 2500})

    with open(settings.path) as f:
        assert yaml.safe_load(f) == {"host": "192.168.1.20", "port": 502, "unitId": 3, "timeout": 2500}

    reloaded = ModbusSettingsStore(settings.path)
    assert reloaded.get() == ModbusConfig("192.168.1.20", 502, 3, 2500)


def test_update_keeps_unspecified_fields(settings):
    config = settings.update({"host": "robot.local", "port": 1502})
    assert config.unit_id == 1
    assert config.timeout == 1000


@pytest.mark.parametrize("payload", [
    {"port": 502},
    {"host": "robot"},
    {"host": "robot", "port": 70000},
    {"host": "robot", "port": "abc"},
    {"host": "robot", "port": 502, "unitId": 300},
    {"host": "robot", "port": 502, "timeout": 10},
    None,
])
def test_invalid_updates_rejected(settings, payload):
    with pytest.raises(ValidationError):
        settings.update(payload)
    assert not settings.path.exists()


def test_partial_validation_without_endpoint():
    assert validate_updates({"timeout": "3000"}, require_endpoint=False) == {"timeout": 3000}


def test_corrupt_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "modbus-config.yaml"
    path.write_text("host: [unclosed")
    store = ModbusSettingsStore(path, defaults=ModbusConfig(host="fallback"))
    assert store.get().host == "fallback"


def test_reset_restores_defaults(settings):
    settings.update({"host": "robot.local", "port": 1502})
    assert settings.reset().host == "127.0.0.1"
    assert settings.get().port == 5502
