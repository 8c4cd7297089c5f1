"""Tests for environment detection."""

from resque_pool.environment import EnvironmentResolver


class TestEnvironmentResolver:
    def test_override_wins(self):
        resolver = EnvironmentResolver("staging", environ={"RACK_ENV": "a", "RESQUE_ENV": "b"})
        assert resolver.resolve() == "staging"

    def test_rack_env_before_resque_env(self):
        resolver = EnvironmentResolver(environ={"RACK_ENV": "a", "RESQUE_ENV": "b"})
        assert resolver.resolve() == "a"

    def test_resque_env(self):
        assert EnvironmentResolver(environ={"RESQUE_ENV": "b"}).resolve() == "b"

    def test_nothing_set(self):
        assert EnvironmentResolver(environ={}).resolve() is None

    def test_empty_values_are_skipped(self):
        resolver = EnvironmentResolver("", environ={"RACK_ENV": "", "RESQUE_ENV": "b"})
        assert resolver.resolve() == "b"

    def test_reads_process_environment_on_every_call(self, monkeypatch):
        """Changes to the process environment are seen by later calls."""
        resolver = EnvironmentResolver()
        assert resolver.resolve() is None

        monkeypatch.setenv("RESQUE_ENV", "production")
        assert resolver.resolve() == "production"

        monkeypatch.setenv("RACK_ENV", "development")
        assert resolver.resolve() == "development"
