from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Iterator
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.config.config_exception import ConfigException

from job_watcher.src.__main__ import JSONFormatter, main, redact_sensitive_text
from job_watcher.src.informer import WatchError


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        formatter = JSONFormatter()
        record = self._make_record()

        parsed = json.loads(formatter.format(record))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed

    def test_format_includes_error_on_exception(self) -> None:
        formatter = JSONFormatter()
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(formatter.format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_omits_error_when_no_exception(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert "error" not in parsed

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg=(
                "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
                "url=/readyz?access_token=qwerty"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message
        assert "access_token=qwerty" not in message

    def test_format_redacts_sensitive_values_in_exception_text(self) -> None:
        try:
            raise ValueError("token=abc123")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "[REDACTED]" in parsed["error"]
        assert "abc123" not in parsed["error"]


def test_redaction_leaves_ordinary_messages_alone() -> None:
    message = "Restarted deployment dev-namespace/dev-deployment after job dev-job-42"

    assert redact_sensitive_text(message) == message


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    @pytest.fixture(autouse=True)
    def mock_signal(self, monkeypatch: pytest.MonkeyPatch) -> Iterator[MagicMock]:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        for name in ("MONITORED_NAMESPACE", "JOB_NAME_PATTERN", "WORKER_COUNT", "HEALTH_PORT"):
            monkeypatch.delenv(name, raising=False)
        with patch("job_watcher.src.__main__.signal.signal") as mock_signal:
            yield mock_signal

    def _controller(self, run_forever_side_effect: object = None) -> MagicMock:
        mock_controller = MagicMock()
        mock_controller.ready = threading.Event()

        def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
            if shutdown_event is not None:
                shutdown_event.set()

        mock_controller.run_forever.side_effect = run_forever_side_effect or fake_run_forever
        return mock_controller

    def test_main_wires_components_and_exits_cleanly(self) -> None:
        mock_controller = self._controller()
        apps_api = SimpleNamespace(name="apps")
        batch_api = SimpleNamespace(name="batch")

        with (
            patch("job_watcher.src.__main__.load_kube_configuration"),
            patch(
                "job_watcher.src.__main__.build_clients",
                return_value=(SimpleNamespace(), apps_api, batch_api),
            ),
            patch(
                "job_watcher.src.__main__.build_controller",
                return_value=mock_controller,
            ) as mock_build,
            patch("job_watcher.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            exit_code = main()

        assert exit_code == 0
        mock_controller.run_forever.assert_called_once()
        config = mock_build.call_args.args[0]
        assert config.monitored_namespace == "dev-namespace"
        assert mock_build.call_args.kwargs == {"batch_api": batch_api, "apps_api": apps_api}
        assert mock_health.call_args.kwargs["port"] == 9440
        assert mock_health.call_args.kwargs["ready"] is mock_controller.ready
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers_that_stop_the_controller(
        self, mock_signal: MagicMock
    ) -> None:
        mock_controller = self._controller()

        with (
            patch("job_watcher.src.__main__.load_kube_configuration"),
            patch(
                "job_watcher.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace(), SimpleNamespace()),
            ),
            patch("job_watcher.src.__main__.build_controller", return_value=mock_controller),
            patch("job_watcher.src.__main__.start_health_server"),
        ):
            main()

        registered = {call.args[0]: call.args[1] for call in mock_signal.call_args_list}
        assert set(registered) == {signal.SIGTERM, signal.SIGINT}

        registered[signal.SIGTERM](signal.SIGTERM, None)
        mock_controller.request_stop.assert_called_once()

    def test_main_fails_on_invalid_job_name_pattern(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("JOB_NAME_PATTERN", "dev-job-(")

        with patch("job_watcher.src.__main__.load_kube_configuration") as mock_load:
            exit_code = main()

        assert exit_code == 1
        mock_load.assert_not_called()
        assert "Invalid JOB_NAME_PATTERN" in capsys.readouterr().err

    def test_main_fails_on_invalid_number(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with patch("job_watcher.src.__main__.load_kube_configuration"):
            exit_code = main()

        assert exit_code == 1
        assert "HEALTH_PORT" in capsys.readouterr().err

    def test_main_fails_when_kube_configuration_unavailable(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with (
            patch(
                "job_watcher.src.__main__.load_kube_configuration",
                side_effect=ConfigException("no kubeconfig"),
            ),
            patch("job_watcher.src.__main__.build_controller") as mock_build,
        ):
            exit_code = main()

        assert exit_code == 1
        mock_build.assert_not_called()
        assert "Unable to load Kubernetes configuration" in capsys.readouterr().err

    def test_main_fails_when_watch_cannot_be_established(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        mock_controller = self._controller(
            run_forever_side_effect=WatchError("Kubernetes API watch denied (status=403)")
        )

        with (
            patch("job_watcher.src.__main__.load_kube_configuration"),
            patch(
                "job_watcher.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace(), SimpleNamespace()),
            ),
            patch("job_watcher.src.__main__.build_controller", return_value=mock_controller),
            patch("job_watcher.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            exit_code = main()

        assert exit_code == 1
        assert "watch denied" in capsys.readouterr().err
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_fails_when_health_port_is_taken(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        mock_controller = self._controller()

        with (
            patch("job_watcher.src.__main__.load_kube_configuration"),
            patch(
                "job_watcher.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace(), SimpleNamespace()),
            ),
            patch("job_watcher.src.__main__.build_controller", return_value=mock_controller),
            patch(
                "job_watcher.src.__main__.start_health_server",
                side_effect=OSError("Address already in use"),
            ),
        ):
            exit_code = main()

        assert exit_code == 1
        mock_controller.run_forever.assert_not_called()
        assert "Unable to start health server" in capsys.readouterr().err
