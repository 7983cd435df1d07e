import json
import logging

import pytest
from click.testing import CliRunner

from dlqueue.cli import cli


@pytest.fixture(autouse=True)
def restore_root_logger():
    # the CLI reconfigures root logging on every invocation
    root = logging.getLogger()
    level, handlers = root.level, root.handlers[:]
    yield
    root.setLevel(level)
    root.handlers[:] = handlers


@pytest.fixture
def invoke(db_path, tmp_path):
    runner = CliRunner()
    env = {
        "DLQUEUE_LOG_LEVEL": "ERROR",
        "DLQUEUE_YTDLP": str(tmp_path / "missing-yt-dlp"),
        "DLQUEUE_OUTPUT_DIR": str(tmp_path / "downloads"),
    }

    def _invoke(*args):
        return runner.invoke(cli, ["--db", db_path, *args], env=env)

    return _invoke


def test_enqueue_and_status(invoke):
    result = invoke("enqueue", "--event-id", "evt-1", "https://example.com/v1")
    assert result.exit_code == 0, result.output
    assert "Enqueued" in result.output

    result = invoke("status")
    assert result.exit_code == 0
    assert json.loads(result.stdout)["queued"] == 1


def test_enqueue_rejects_invalid_url(invoke):
    result = invoke("enqueue", "--event-id", "evt-1", "ftp://old.site/file")
    assert result.exit_code == 1
    assert "Error" in result.output


def test_submit_is_idempotent_per_event(invoke):
    first = invoke("submit", "--event-id", "7", "watch this https://example.com/v1 and https://example.com/v2")
    assert first.exit_code == 0, first.output
    assert first.output.count("Enqueued") == 2

    again = invoke("submit", "--event-id", "7", "watch this https://example.com/v1")
    assert again.exit_code == 0
    assert "No new jobs." in again.output


def test_list_filters_by_status(invoke):
    invoke("enqueue", "--event-id", "evt-1", "https://example.com/v1")
    result = invoke("list", "--status", "Queued")
    assert "https://example.com/v1" in result.output
    assert invoke("list", "--status", "Completed").output.strip() == "No jobs."


def test_config_set_and_get(invoke):
    assert invoke("config", "set", "max_retries", "5").exit_code == 0
    assert invoke("config", "set", "job_timeout_seconds", "1h").exit_code == 0
    config = json.loads(invoke("config", "get").stdout)
    assert config["max_retries"] == "5"
    assert config["job_timeout_seconds"] == "3600"


@pytest.mark.parametrize("key,value", [("bogus", "1"), ("max_retries", "many"), ("backoff_base", "-1")])
def test_config_set_rejects_bad_values(invoke, key, value):
    result = invoke("config", "set", key, value)
    assert result.exit_code == 1
    assert "Error:" in result.output


def test_state_set_and_get(invoke):
    assert invoke("state", "set", "last_cursor", "1234").exit_code == 0
    result = invoke("state", "get", "last_cursor")
    assert result.stdout.strip() == "1234"
    assert invoke("state", "get", "unknown").exit_code == 1


def test_state_set_accepts_negative_values(invoke):
    assert invoke("state", "set", "offset", "-5").exit_code == 0
    assert invoke("state", "get", "offset").stdout.strip() == "-5"


def test_health_reports_missing_yt_dlp(invoke):
    result = invoke("health")
    assert result.exit_code == 1
    report = json.loads(result.stdout)
    assert report["database"] == "ok"
    assert report["yt_dlp"] == "unavailable"
    assert report["healthy"] is False


def test_list_as_json(invoke):
    invoke("enqueue", "--event-id", "evt-1", "https://example.com/v1")
    jobs = json.loads(invoke("list", "--json").stdout)
    assert [(j["url"], j["status"], j["retry_count"]) for j in jobs] == [("https://example.com/v1", "Queued", 0)]
