"""Tests for option loading and resolution."""

import json

import pytest

from pywchtools.config import DEFAULT_OPTIONS, Config
from pywchtools.context import SyncContext
from pywchtools.exceptions import WchConfigError


class TestConfig:
    """Tests for Config."""

    def test_load_file(self, tmp_path):
        """Test loading global and per-service options."""
        path = tmp_path / ".wchtoolsoptions"
        path.write_text(
            json.dumps({"concurrent_limit": 2, "types": {"concurrent_limit": 7}})
        )
        config = Config(load_defaults=False)
        config.load_file(path)

        assert config.get_property(None, "concurrent_limit") == 2
        assert config.get_property("types", "concurrent_limit") == 7
        assert config.get_property("content", "concurrent_limit") == 2
        assert config.get_property("types", "missing") is None

    def test_merge_combines_sections(self):
        """Test that merging keeps existing keys of a service section."""
        config = Config(load_defaults=False)
        config.merge({"types": {"a": 1}})
        config.merge({"types": {"b": 2}})

        assert config.get_property("types", "a") == 1
        assert config.get_property("types", "b") == 2

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
    def test_malformed_file(self, tmp_path, content):
        """Test that broken options files raise WchConfigError."""
        path = tmp_path / "options.json"
        path.write_text(content)
        with pytest.raises(WchConfigError):
            Config(load_defaults=False).load_file(path)

    def test_missing_file(self, tmp_path):
        """Test that a missing options file raises WchConfigError."""
        with pytest.raises(WchConfigError):
            Config(load_defaults=False).load_file(tmp_path / "nope")

    def test_environment(self, monkeypatch, tmp_path):
        """Test credentials and URL from the environment."""
        monkeypatch.setenv("WCHTOOLS_BASE_URL", "https://env.example.com/api")
        monkeypatch.setenv("WCHTOOLS_USERNAME", "alice")
        monkeypatch.setenv("WCHTOOLS_PASSWORD", "secret")
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.chdir(tmp_path)
        config = Config()

        assert config.base_url == "https://env.example.com/api"
        assert config.username == "alice"
        assert config.password == "secret"


class TestOptionResolution:
    """Tests for SyncContext.get_option precedence."""

    def make_context(self, options=None):
        config = Config(load_defaults=False)
        config.merge({"limit": 10, "types": {"limit": 20}})
        return SyncContext(base_url="https://x", config=config, options=options or {})

    def test_call_options_win(self):
        """Test that call options override everything else."""
        context = self.make_context({"limit": 30, "types": {"limit": 40}})
        assert context.get_option("limit", "types", {"limit": 50}) == 50

    def test_context_service_section(self):
        """Test that the context service section beats context globals."""
        context = self.make_context({"limit": 30, "types": {"limit": 40}})
        assert context.get_option("limit", "types") == 40
        assert context.get_option("limit", "content") == 30

    def test_config_fallback(self):
        """Test that config values apply when the context has none."""
        context = self.make_context()
        assert context.get_option("limit", "types") == 20
        assert context.get_option("limit", "content") == 10

    def test_defaults(self):
        """Test that built-in defaults apply last."""
        context = SyncContext(base_url="https://x", config=Config(load_defaults=False))
        assert context.get_option("retry_max_attempts") == DEFAULT_OPTIONS["retry_max_attempts"]
        assert context.get_option("unknown", default="x") == "x"

    def test_base_url_required(self):
        """Test that a missing base URL is a configuration error."""
        context = SyncContext(base_url=None, config=Config(load_defaults=False))
        with pytest.raises(WchConfigError):
            context.get_base_url("types", None)
        assert context.get_base_url("types", {"base_url": "https://y/"}).startswith("https://y")

    def test_request_ids(self):
        """Test that request ids share a prefix and are unique."""
        context = SyncContext(
            base_url="https://x", config=Config(load_defaults=False), request_id_prefix="run"
        )
        assert context.next_request_id() == "run-1"
        assert context.next_request_id() == "run-2"
