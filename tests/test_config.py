from pathlib import Path

from learnprogress.config import DEFAULT_API_URL, DEFAULT_DB_PATH, EngineConfig


def test_from_env_defaults() -> None:
    config = EngineConfig.from_env({})
    assert config.db_path == DEFAULT_DB_PATH
    assert config.api_base_url == DEFAULT_API_URL
    assert config.api_token is None
    assert config.timeout_seconds == 30.0
    assert config.timezone == "UTC"
    assert config.offline is False
    assert config.report_completions is True


def test_from_env_reads_prefixed_variables() -> None:
    config = EngineConfig.from_env(
        {
            "LEARNPROGRESS_DB_PATH": "/tmp/lp/progress.db",
            "LEARNPROGRESS_API_URL": "https://staging.example.test",
            "LEARNPROGRESS_API_TOKEN": " secret ",
            "LEARNPROGRESS_TIMEOUT": "2.5",
            "LEARNPROGRESS_TIMEZONE": "Europe/Paris",
            "UNRELATED": "x",
        }
    )
    assert config.db_path == Path("/tmp/lp/progress.db")
    assert config.api_base_url == "https://staging.example.test"
    assert config.api_token == "secret"
    assert config.timeout_seconds == 2.5
    assert config.timezone == "Europe/Paris"


def test_offline_disables_api() -> None:
    config = EngineConfig.from_env({"LEARNPROGRESS_OFFLINE": "true", "LEARNPROGRESS_API_URL": "https://x.test"})
    assert config.offline is True
    assert config.api_base_url is None
    assert config.report_completions is False


def test_invalid_timeout_raises() -> None:
    try:
        EngineConfig.from_env({"LEARNPROGRESS_TIMEOUT": "soon"})
        raise AssertionError("Expected ValueError for invalid timeout.")
    except ValueError as exc:
        assert "LEARNPROGRESS_TIMEOUT" in str(exc)
