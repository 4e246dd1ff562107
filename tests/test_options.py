"""Tests for the options file merge and validation."""

import json

import pytest

from degu.errors import ConfigurationError
from degu.options import (
    DeguOptions,
    OnUpdate,
    build_options,
    default_options,
    load_options,
    merge_options,
)


@pytest.fixture
def defaults() -> dict:
    return DeguOptions().to_dict()


class TestMergeOptions:
    """Tests for the pure merge function."""

    def test_nested_mapping_merged_one_level(self, defaults):
        merged = merge_options(defaults, {"api": {"port": 9000}})
        assert merged["api"]["port"] == 9000
        assert merged["api"]["enable"] is True
        assert merged["api"]["prefix"] == "/"

    def test_lists_replaced_wholesale(self, defaults):
        merged = merge_options(defaults, {"steps": [["pip", "install", "-r", "requirements.txt"]]})
        assert merged["steps"] == [["pip", "install", "-r", "requirements.txt"]]

    def test_unknown_keys_ignored(self, defaults):
        merged = merge_options(defaults, {"bogus": 1, "main": ["node", "server.js"]})
        assert "bogus" not in merged
        assert merged["main"] == ["node", "server.js"]

    def test_defaults_not_mutated(self, defaults):
        before = json.dumps(defaults, sort_keys=True)
        merge_options(defaults, {"api": {"port": 1}, "env": {"A": "1"}})
        assert json.dumps(defaults, sort_keys=True) == before

    def test_env_merged_with_defaults(self):
        merged = merge_options({"env": {"A": "1", "B": "2"}}, {"env": {"B": "3"}})
        assert merged["env"] == {"A": "1", "B": "3"}


class TestDeguOptions:
    """Tests for option validation."""

    def test_defaults(self):
        options = DeguOptions()
        assert options.steps == [["npm", "install"]]
        assert options.main == ["npm", "start"]
        assert options.forever is False
        assert options.api.port == 8125
        assert options.update_scheduler.enable is False

    def test_string_commands_split(self, defaults):
        options = build_options(merge_options(defaults, {
            "steps": ["npm ci", ["npm", "run", "build"]],
            "main": "node  dist/server.js",
        }))
        assert options.steps == [["npm", "ci"], ["npm", "run", "build"]]
        assert options.main == ["node", "dist/server.js"]

    def test_empty_main_rejected(self, defaults):
        with pytest.raises(ConfigurationError):
            build_options(merge_options(defaults, {"main": []}))

    def test_env_values_stringified(self, defaults):
        options = build_options(merge_options(defaults, {"env": {"PORT": 3000, "DEBUG": True}}))
        assert options.env == {"PORT": "3000", "DEBUG": "True"}

    def test_whitelist_string_split(self, defaults):
        options = build_options(merge_options(defaults, {"api": {"whitelist": "10.0.0.1, 10.0.0.2;127.0.0.1"}}))
        assert options.api.whitelist == ["10.0.0.1", "10.0.0.2", "127.0.0.1"]

    def test_update_scheduler_alias(self, defaults):
        options = build_options(merge_options(defaults, {
            "updateScheduler": {"enable": True, "interval": 120, "onUpdate": "EXIT"},
        }))
        assert options.update_scheduler.enable is True
        assert options.update_scheduler.interval == 120
        assert options.update_scheduler.on_update is OnUpdate.EXIT
        assert options.to_dict()["updateScheduler"]["onUpdate"] == "exit"

    def test_short_interval_is_not_a_validation_error(self, defaults):
        options = build_options(merge_options(defaults, {"updateScheduler": {"interval": 30}}))
        assert options.update_scheduler.interval == 30
        assert options.update_scheduler.interval_valid is False

    def test_invalid_on_update(self, defaults):
        with pytest.raises(ConfigurationError):
            build_options(merge_options(defaults, {"updateScheduler": {"onUpdate": "reboot"}}))

    @pytest.mark.parametrize(
        "prefix, expected",
        [("/", "/"), ("", "/"), ("api", "/api/"), ("/api", "/api/"), ("/api/", "/api/"), ("a/b/", "/a/b/")],
    )
    def test_normalized_prefix(self, defaults, prefix, expected):
        options = build_options(merge_options(defaults, {"api": {"prefix": prefix}}))
        assert options.api.normalized_prefix == expected


class TestLoadOptions:
    """Tests for reading the options file."""

    def test_missing_file_uses_defaults(self, tmp_path, defaults):
        options = load_options(tmp_path / ".degu.json", defaults)
        assert options == DeguOptions()

    def test_file_merged(self, tmp_path, defaults):
        path = tmp_path / ".degu.json"
        path.write_text(json.dumps({"main": ["python", "app.py"], "steps": [], "api": {"prefix": "/degu"}}))
        options = load_options(path, defaults)
        assert options.main == ["python", "app.py"]
        assert options.steps == []
        assert options.api.normalized_prefix == "/degu/"
        assert options.api.port == 8125

    def test_malformed_json(self, tmp_path, defaults):
        path = tmp_path / ".degu.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_options(path, defaults)

    def test_non_object(self, tmp_path, defaults):
        path = tmp_path / ".degu.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigurationError):
            load_options(path, defaults)


class TestDefaultOptions:
    """Tests for environment provided defaults."""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DEGU_API_PORT", "9001")
        monkeypatch.setenv("DEGU_API_WHITELIST", "127.0.0.1")
        monkeypatch.setenv("DEGU_UPDATE_ENABLE", "true")
        monkeypatch.setenv("DEGU_UPDATE_INTERVAL", "300")
        monkeypatch.setenv("DEGU_FOREVER", "1")
        options = build_options(default_options())
        assert options.api.port == 9001
        assert options.api.whitelist == ["127.0.0.1"]
        assert options.update_scheduler.enable is True
        assert options.update_scheduler.interval == 300
        assert options.forever is True

    def test_api_can_be_disabled(self, monkeypatch):
        monkeypatch.setenv("DEGU_API_ENABLE", "false")
        assert build_options(default_options()).api.enable is False

    @pytest.mark.parametrize("name", ["DEGU_API_PORT", "DEGU_UPDATE_INTERVAL"])
    def test_malformed_number(self, monkeypatch, name):
        monkeypatch.setenv(name, "soon")
        with pytest.raises(ConfigurationError):
            default_options()
