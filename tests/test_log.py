"""Tests for log formatting, the supervisor log callback and the Loki handler."""

import logging

import pytest
import requests

from workerpool import log as workerpool_log
from workerpool.log import handler as handler_module
from workerpool.log import setup as log_setup_module
from workerpool.log.handler import LokiHandler
from workerpool.log.setup import MainFormatter


def make_record(name, message, level=logging.INFO):
    return logging.LogRecord(name, level, __file__, 1, message, None, None)


class FakeResponse:
    def __init__(self, status_code=204, text=""):
        self.status_code = status_code
        self.text = text


@pytest.fixture
def posts(monkeypatch):
    sent = []

    def fake_post(url, json=None, headers=None, timeout=None):
        sent.append({"url": url, "json": json, "headers": headers})
        return FakeResponse()

    monkeypatch.setattr(handler_module.requests, "post", fake_post)
    return sent


@pytest.fixture
def loki(posts):
    handler = LokiHandler("http://loki:3100/", org_id="tenant", flush_interval=60, batch_size=3)
    handler.setFormatter(logging.Formatter("%(message)s"))
    yield handler
    handler.close()


def test_main_formatter_passes_worker_output_through():
    formatter = MainFormatter()

    assert formatter.format(make_record("proc.worker-1", "raw line")) == "raw line"
    formatted = formatter.format(make_record("workerpool.app", "hello"))
    assert formatted.endswith(" - INFO     - [workerpool.app] - hello")


def test_logger_callback_writes_to_named_logger(caplog):
    callback = workerpool_log.logger_callback("workerpool.test", logging.WARNING)

    with caplog.at_level(logging.WARNING, logger="workerpool.test"):
        callback("Child 12 exited with exit code 0")

    assert caplog.records[-1].name == "workerpool.test"
    assert caplog.records[-1].levelno == logging.WARNING
    assert caplog.records[-1].getMessage() == "Child 12 exited with exit code 0"


def test_loki_handler_batches_and_pushes(loki, posts):
    loki.emit(make_record("workerpool.supervisor", "one"))
    loki.emit(make_record("proc.worker-2", "two", logging.ERROR))
    assert posts == []

    loki.emit(make_record("workerpool.supervisor", "three"))

    assert len(posts) == 1
    push = posts[0]
    assert push["url"] == "http://loki:3100/loki/api/v1/push"
    assert push["headers"]["X-Scope-OrgID"] == "tenant"
    streams = push["json"]["streams"]
    assert [s["values"][0][1] for s in streams] == ["one", "two", "three"]
    assert streams[1]["stream"]["logger"] == "worker-2"
    assert streams[1]["stream"]["level"] == "error"
    assert streams[1]["stream"]["role"] == "worker"
    assert streams[0]["stream"]["role"] == "supervisor"
    assert streams[0]["stream"]["job"] == "workerpool"


def test_loki_handler_flushes_on_close(posts):
    handler = LokiHandler("http://loki:3100", flush_interval=60, batch_size=100)
    handler.emit(make_record("workerpool", "pending"))

    handler.close()

    assert [s["values"][0][1] for s in posts[0]["json"]["streams"]] == ["pending"]


def test_loki_handler_ignores_records_from_other_processes(loki, posts):
    loki.pid = -1
    loki.emit(make_record("workerpool", "from a worker"))
    loki.flush()
    assert posts == []


def test_loki_send_failure_is_reported_on_stderr(loki, monkeypatch, capsys):
    def failing_post(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(handler_module.requests, "post", failing_post)
    loki.emit(make_record("workerpool", "lost"))
    loki.flush()

    assert "Failed to send 1 logs to Loki" in capsys.readouterr().err


def test_setup_logging_installs_console_handler(monkeypatch):
    monkeypatch.setattr(log_setup_module.config, "LOKI_ENABLED", False)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level

    try:
        log_setup_module.setup_logging(logging.WARNING)
        installed = list(root.handlers)
        root_level = root.level
    finally:
        root.handlers[:] = handlers
        root.setLevel(level)

    assert root_level == logging.DEBUG
    assert len(installed) == 1
    assert installed[0].level == logging.WARNING
    assert isinstance(installed[0].formatter, MainFormatter)
