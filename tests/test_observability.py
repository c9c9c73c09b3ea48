import io
import json

import pytest

from deployease.config import parse_dotenv
from deployease.errors import TransientError
from deployease.observability.logging import JsonStdoutLogger, redact, with_span
from deployease.observability.metrics import Counter, Histogram, render_metrics


class RecordingLogger:
    def __init__(self):
        self.events = []

    def info(self, event, **fields):
        self.events.append(("info", event, fields))

    def warn(self, event, **fields):
        self.events.append(("warn", event, fields))

    def error(self, event, **fields):
        self.events.append(("error", event, fields))


class Adapter:
    def __init__(self, logger):
        self._logger = logger

    @with_span("provider.fetch", fields_fn=lambda self, path: {"path": path})
    async def fetch(self, path):
        if path == "boom":
            raise TransientError("network down")
        return path.upper()


def test_redact_masks_tokens_only():
    cleaned = redact({"token": "ghp_1234567890", "authorization": "short", "branch": "blue"})

    assert cleaned == {"token": "ghp_***", "authorization": "***", "branch": "blue"}


def test_stdout_logger_writes_json_lines(tmp_path):
    stream = io.StringIO()
    log_file = tmp_path / "obs" / "events.jsonl"
    logger = JsonStdoutLogger(service="deployease", env="test", log_path=log_file, stream=stream)

    logger.info("switch.done", target="green", netlify_token="nfp_abcdefghijk")

    line = json.loads(stream.getvalue())
    assert line["event"] == "switch.done"
    assert line["env"] == "test"
    assert line["netlify_token"] == "nfp_***"
    assert json.loads(log_file.read_text(encoding="utf-8")) == line


@pytest.mark.asyncio
async def test_span_logs_start_and_end():
    logger = RecordingLogger()

    assert await Adapter(logger).fetch("main") == "MAIN"

    assert [e[1] for e in logger.events] == ["provider.fetch.start", "provider.fetch.end"]
    assert logger.events[1][2]["path"] == "main"
    assert "duration_ms" in logger.events[1][2]


@pytest.mark.asyncio
async def test_span_logs_error_kind_and_reraises():
    logger = RecordingLogger()

    with pytest.raises(TransientError):
        await Adapter(logger).fetch("boom")

    level, event, fields = logger.events[-1]
    assert (level, event) == ("error", "provider.fetch.error")
    assert fields["error_kind"] == "TransientError"
    assert fields["retryable"] is True


def test_histogram_buckets_are_cumulative():
    hist = Histogram("test_latency_seconds", "Latency", ("target",), buckets=(0.1, 1.0))
    child = hist.labels(target="blue")
    for seconds in (0.05, 0.5, 5.0):
        child.observe(seconds)

    lines = list(hist.samples())

    assert 'test_latency_seconds_bucket{target="blue",le="0.1"} 1' in lines
    assert 'test_latency_seconds_bucket{target="blue",le="1.0"} 2' in lines
    assert 'test_latency_seconds_bucket{target="blue",le="+Inf"} 3' in lines
    assert 'test_latency_seconds_count{target="blue"} 3' in lines


def test_counter_rejects_missing_labels_and_negative_increments():
    counter = Counter("test_events_total", "Events", ("kind",))

    with pytest.raises(ValueError):
        counter.labels()
    with pytest.raises(ValueError):
        counter.labels(kind="x").inc(-1)


def test_render_includes_registered_families():
    text = render_metrics()

    assert "# TYPE deployease_switches_total counter" in text
    assert "# TYPE deployease_switch_duration_seconds histogram" in text


def test_parse_dotenv_handles_exports_comments_and_quotes():
    text = "# comment\nexport A='1'\nB=\"two words\"\nC = plain\nnot-a-pair\n"

    assert parse_dotenv(text) == {"A": "1", "B": "two words", "C": "plain"}
