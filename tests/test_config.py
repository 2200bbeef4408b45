"""Test config -- PhoneFleet."""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from phonefleet.config import (
    DEFAULT_APP_PACKAGE,
    DeviceInfo,
    FleetSettings,
    load_devices,
    parse_resolution,
    setup_logging,
)


# ===========================================================================
# SETTINGS
# ===========================================================================


@pytest.mark.unit
class TestFleetSettings:

    def test_defaults(self, tmp_path):
        s = FleetSettings(data_dir=tmp_path)
        assert s.api_port == 8770
        assert s.db_path == tmp_path / "fleet.db"
        assert s.app_package == DEFAULT_APP_PACKAGE
        assert s.reconnect_on_start is True
        assert s.cancel_active_on_shutdown is False

    def test_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLEET_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("FLEET_API_PORT", "9000")
        monkeypatch.setenv("FLEET_CORS_ORIGINS", "http://a, http://b")
        monkeypatch.setenv("FLEET_RECONNECT_ON_START", "false")
        monkeypatch.setenv("FLEET_CANCEL_ON_SHUTDOWN", "yes")
        monkeypatch.setenv("FLEET_TICK_INTERVAL", "0.25")
        s = FleetSettings.from_env()
        assert s.api_port == 9000
        assert s.cors_origins == ["http://a", "http://b"]
        assert s.reconnect_on_start is False
        assert s.cancel_active_on_shutdown is True
        assert s.tick_interval == 0.25
        assert s.db_path == tmp_path / "fleet.db"

    def test_bad_numbers_fall_back(self, monkeypatch):
        monkeypatch.setenv("FLEET_API_PORT", "eighty")
        monkeypatch.setenv("FLEET_FLUSH_DEBOUNCE", "soon")
        s = FleetSettings.from_env()
        assert s.api_port == 8770
        assert s.flush_debounce == 0.5

    def test_explicit_db_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLEET_DB_PATH", str(tmp_path / "custom.db"))
        assert FleetSettings.from_env().db_path == tmp_path / "custom.db"

    def test_to_dict_stringifies_paths(self, tmp_path):
        d = FleetSettings(data_dir=tmp_path).to_dict()
        assert d["db_path"] == str(tmp_path / "fleet.db")
        json.dumps(d)


# ===========================================================================
# DEVICE REGISTRY
# ===========================================================================


@pytest.mark.unit
class TestDeviceRegistry:

    def test_parse_resolution(self):
        assert parse_resolution("1440x3168") == (1440, 3168)
        assert parse_resolution(" 720 X 1600 ") == (720, 1600)
        assert parse_resolution("0x100") is None
        assert parse_resolution("wide") is None
        assert parse_resolution(None) is None

    def test_load_object_form(self, tmp_path):
        path = tmp_path / "devices.json"
        path.write_text(json.dumps({"devices": [
            {"device": "R58M", "name": "rack-1", "resolution": "1440x3040"},
            {"device": "192.168.1.40:5555"},
            {"device": "R58M"},
            {"name": "no id"},
        ]}))
        devices = load_devices(path)
        assert [d.device_id for d in devices] == ["R58M", "192.168.1.40:5555"]
        assert devices[0].resolution_hint == (1440, 3040)
        assert devices[1].is_tcp
        assert not devices[0].is_tcp

    def test_load_list_of_strings(self, tmp_path):
        path = tmp_path / "devices.json"
        path.write_text(json.dumps(["A", "B"]))
        assert [d.device_id for d in load_devices(path)] == ["A", "B"]

    def test_missing_file(self, tmp_path):
        assert load_devices(tmp_path / "absent.json") == []

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "devices.json"
        path.write_text("{not json")
        assert load_devices(path) == []

    def test_device_info_round_trip_keys(self):
        info = DeviceInfo.from_dict({"device_id": "X", "resolution": "bad"})
        assert info.device_id == "X"
        assert info.resolution_hint is None
        assert info.to_dict()["device"] == "X"


class TestLogging:

    def test_setup_logging_once(self):
        root = setup_logging("debug")
        handlers = len(root.handlers)
        setup_logging("info")
        assert len(root.handlers) == handlers
        assert root.level == logging.INFO
        assert root.name == "phonefleet"
