from __future__ import annotations

import json
from pathlib import Path

from app.telemetry import GENERATION_LOG_NAME, INSTALL_LOG_NAME, TelemetrySink, log_json_line


class TestTelemetrySink:
    def test_events_written_per_topic(self, tmp_path: Path) -> None:
        sink = TelemetrySink(tmp_path / "logs")
        sink.install_event("stage", stage="clone", fraction=0.5)
        sink.generation_event("completed", session_id="abc", chars=12)
        install = [json.loads(line) for line in (tmp_path / "logs" / INSTALL_LOG_NAME).read_text().splitlines()]
        generation = json.loads((tmp_path / "logs" / GENERATION_LOG_NAME).read_text())
        assert install[0]["event"] == "stage"
        assert install[0]["stage"] == "clone"
        assert install[0]["timestamp"].endswith("Z")
        assert generation["session_id"] == "abc"

    def test_disabled_sink_writes_nothing(self, tmp_path: Path) -> None:
        sink = TelemetrySink(None)
        sink.install_event("stage", stage="clone")
        assert not sink.enabled
        assert list(tmp_path.iterdir()) == []

    def test_empty_payload_skipped(self, tmp_path: Path) -> None:
        target = tmp_path / "events.jsonl"
        log_json_line(target, {})
        assert not target.exists()
