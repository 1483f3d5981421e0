import importlib
import os

import pytest

from living_story import config


def test_load_env_file_sets_new_vars_and_keeps_existing(tmp_path, monkeypatch):
    env_path = tmp_path / "sample.env"
    env_path.write_text(
        "\n".join(
            [
                "# comment",
                "EXISTING=from_file",
                "NEW_VAR='new_value'",
                "INVALID_LINE",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("EXISTING", "from_env")
    monkeypatch.delenv("NEW_VAR", raising=False)

    config._load_env_file(env_path)

    assert os.environ["EXISTING"] == "from_env"
    assert os.environ["NEW_VAR"] == "new_value"
    monkeypatch.delenv("NEW_VAR", raising=False)


def test_load_env_file_returns_when_path_missing(tmp_path):
    config._load_env_file(tmp_path / "missing.env")


@pytest.mark.parametrize(
    "value, expected_message",
    [
        ("0", "TEST_POSITIVE_INT must be > 0"),
        ("-1", "TEST_POSITIVE_INT must be > 0"),
        ("oops", "TEST_POSITIVE_INT must be an integer"),
    ],
)
def test_get_positive_int_rejects_invalid_values(monkeypatch, value, expected_message):
    monkeypatch.setenv("TEST_POSITIVE_INT", value)
    with pytest.raises(ValueError, match=expected_message):
        config._get_positive_int("TEST_POSITIVE_INT", 7)


def test_get_positive_int_returns_default_when_missing(monkeypatch):
    monkeypatch.delenv("TEST_POSITIVE_INT", raising=False)
    assert config._get_positive_int("TEST_POSITIVE_INT", 7) == 7


def test_get_positive_float_rejects_text(monkeypatch):
    monkeypatch.setenv("TEST_POSITIVE_FLOAT", "soon")
    with pytest.raises(ValueError, match="TEST_POSITIVE_FLOAT must be a number"):
        config._get_positive_float("TEST_POSITIVE_FLOAT", 1.0)


def test_get_positive_float_returns_env_value(monkeypatch):
    monkeypatch.setenv("TEST_POSITIVE_FLOAT", "2.5")
    assert config._get_positive_float("TEST_POSITIVE_FLOAT", 1.0) == 2.5


def test_defaults_match_documented_values():
    assert config.RISK_HIGH_FIELD_COUNT == 3
    assert config.RISK_MEDIUM_FIELD_COUNT == 2
    assert config.HISTORY_LIMIT == 100
    assert config.SUMMARY_PREVIEW_LIMIT == 3


def test_risk_medium_exceeding_high_raises(monkeypatch):
    monkeypatch.setenv("LIVING_STORY_RISK_HIGH_FIELD_COUNT", "2")
    monkeypatch.setenv("LIVING_STORY_RISK_MEDIUM_FIELD_COUNT", "4")
    with pytest.raises(ValueError, match="LIVING_STORY_RISK_MEDIUM_FIELD_COUNT must be <="):
        importlib.reload(config)
    monkeypatch.delenv("LIVING_STORY_RISK_HIGH_FIELD_COUNT", raising=False)
    monkeypatch.delenv("LIVING_STORY_RISK_MEDIUM_FIELD_COUNT", raising=False)
    importlib.reload(config)


def test_lock_timeout_reads_env(monkeypatch):
    monkeypatch.setenv("LIVING_STORY_LOCK_TIMEOUT_SECONDS", "1.5")
    reloaded = importlib.reload(config)
    assert reloaded.LOCK_TIMEOUT_SECONDS == 1.5
    monkeypatch.delenv("LIVING_STORY_LOCK_TIMEOUT_SECONDS", raising=False)
    importlib.reload(config)


def test_storage_mode_defaults_to_memory(monkeypatch):
    monkeypatch.delenv("LIVING_STORY_STORAGE", raising=False)
    assert config.require_storage_mode() == "memory"


def test_storage_mode_rejects_unknown(monkeypatch):
    monkeypatch.setenv("LIVING_STORY_STORAGE", "sqlite")
    with pytest.raises(RuntimeError, match="LIVING_STORY_STORAGE"):
        config.require_storage_mode()


def test_generator_mode_normalizes_case(monkeypatch):
    monkeypatch.setenv("LIVING_STORY_GENERATOR", " Remote ")
    assert config.require_generator_mode() == "remote"


def test_require_memgraph_host_missing(monkeypatch):
    monkeypatch.delenv("MEMGRAPH_HOST", raising=False)
    with pytest.raises(RuntimeError, match="MEMGRAPH_HOST"):
        config.require_memgraph_host()


def test_require_memgraph_port_invalid(monkeypatch):
    monkeypatch.setenv("MEMGRAPH_PORT", "oops")
    with pytest.raises(ValueError, match="MEMGRAPH_PORT must be an integer"):
        config.require_memgraph_port()


def test_require_memgraph_port_valid(monkeypatch):
    monkeypatch.setenv("MEMGRAPH_PORT", "7687")
    assert config.require_memgraph_port() == 7687
