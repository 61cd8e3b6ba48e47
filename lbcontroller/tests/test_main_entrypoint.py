from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from lbcontroller.src.__main__ import JSONFormatter, load_backend, main
from lbcontroller.src.cloud import InMemoryLoadBalancerBackend


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
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "thread" in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))
        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg="token=abc123 Authorization: Bearer abc.def.ghi access_key_secret=s3cr3t"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "abc.def.ghi" not in message
        assert "s3cr3t" not in message


class TestLoadBackend:
    def test_loads_factory_by_module_and_attribute(self) -> None:
        backend = load_backend("lbcontroller.src.cloud:InMemoryLoadBalancerBackend")
        assert isinstance(backend, InMemoryLoadBalancerBackend)

    @pytest.mark.parametrize("spec", ["lbcontroller.src.cloud", ":Factory", "module:"])
    def test_rejects_malformed_reference(self, spec: str) -> None:
        with pytest.raises(ValueError, match="LB_BACKEND"):
            load_backend(spec)

    def test_missing_attribute_raises(self) -> None:
        with pytest.raises(AttributeError):
            load_backend("lbcontroller.src.cloud:NoSuchBackend")


def _stopping_controller() -> MagicMock:
    controller = MagicMock()
    controller.ready = threading.Event()

    def fake_run(stop_event: threading.Event | None = None) -> None:
        if stop_event is not None:
            stop_event.set()

    controller.run.side_effect = fake_run
    return controller


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def test_main_wires_controller_and_health_server(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.delenv("LB_BACKEND", raising=False)
        monkeypatch.delenv("HEALTH_PORT", raising=False)
        mock_controller = _stopping_controller()
        core_api = SimpleNamespace()

        with (
            patch("lbcontroller.src.__main__.load_kube_configuration"),
            patch("lbcontroller.src.__main__.build_clients", return_value=core_api),
            patch(
                "lbcontroller.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ) as mock_build,
            patch("lbcontroller.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        assert mock_build.call_args.kwargs["core_api"] is core_api
        assert isinstance(mock_build.call_args.kwargs["backend"], InMemoryLoadBalancerBackend)
        assert mock_health.call_args.kwargs["port"] == 8080
        assert mock_health.call_args.kwargs["ready"] is mock_controller.ready
        mock_controller.run.assert_called_once()
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("lbcontroller.src.__main__.load_kube_configuration"),
            patch("lbcontroller.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch(
                "lbcontroller.src.__main__.build_controller_from_env",
                return_value=_stopping_controller(),
            ),
            patch("lbcontroller.src.__main__.start_health_server") as mock_health,
            patch("lbcontroller.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            mock_health.return_value = MagicMock()
            main()

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals

    def test_main_shuts_health_server_down_when_controller_fails(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        mock_controller = MagicMock()
        mock_controller.ready = threading.Event()
        mock_controller.run.side_effect = RuntimeError("informer crashed")

        with (
            patch("lbcontroller.src.__main__.load_kube_configuration"),
            patch("lbcontroller.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch(
                "lbcontroller.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ),
            patch("lbcontroller.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            with pytest.raises(RuntimeError, match="informer crashed"):
                main()

        mock_health.return_value.shutdown.assert_called_once()

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("lbcontroller.src.__main__.load_kube_configuration"),
            patch("lbcontroller.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch(
                "lbcontroller.src.__main__.build_controller_from_env",
                return_value=SimpleNamespace(ready=threading.Event()),
            ),
            pytest.raises(ValueError, match="HEALTH_PORT must be <= 65535, got: 70000"),
        ):
            main()

    def test_main_rejects_malformed_backend_reference(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LB_BACKEND", "not-a-reference")

        with (
            patch("lbcontroller.src.__main__.load_kube_configuration"),
            patch("lbcontroller.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch("lbcontroller.src.__main__.build_controller_from_env") as mock_build,
            pytest.raises(ValueError, match="LB_BACKEND"),
        ):
            main()

        mock_build.assert_not_called()
