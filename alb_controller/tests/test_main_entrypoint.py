from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from alb_controller.src.__main__ import JSONFormatter, load_object, main, redact_sensitive_text
from alb_controller.src.controller import ControllerState
from alb_controller.src.errors import ConfigError, ProviderSyncError, ShutdownInProgressError


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
        assert "error" not in parsed

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
            msg=(
                "token=abc123 Authorization: Bearer abc.def.ghi "
                "aws_secret_access_key=wJalrXUtnFEMI "
                "url=https://bucket.s3.amazonaws.com/key?X-Amz-Signature=deadbeef"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        for secret in ("abc123", "abc.def.ghi", "wJalrXUtnFEMI", "deadbeef"):
            assert secret not in message

    def test_format_redacts_sensitive_values_in_exception_text(self) -> None:
        try:
            raise ValueError("password=hunter2")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "hunter2" not in parsed["error"]


def test_redaction_leaves_ordinary_text_alone() -> None:
    text = "Reconciling 3 ingress(es); 2 bound to a load balancer"
    assert redact_sensitive_text(text) == text


# ---------------------------------------------------------------------------
# Plugin loading
# ---------------------------------------------------------------------------


def test_load_object_resolves_attribute() -> None:
    assert load_object("json:dumps") is json.dumps


@pytest.mark.parametrize(
    "path",
    ["json", ":dumps", "json:", "alb_controller_missing_module:factory", "json:no_such_attribute"],
)
def test_load_object_rejects_bad_references(path: str) -> None:
    with pytest.raises(ConfigError):
        load_object(path)


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def _set_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CLUSTER_NAME", "my-cluster")
        monkeypatch.setenv("PROVIDER_CLIENT_FACTORY", "example.tagging:build_client")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.delenv("INGRESS_RECONCILER", raising=False)
        monkeypatch.delenv("HEALTH_PORT", raising=False)

    def _run_main(
        self,
        controller: Any,
        objects: dict[str, Any] | None = None,
    ) -> tuple[MagicMock, MagicMock, dict[int, Callable[..., None]]]:
        tagging_client = object()
        factory = MagicMock(return_value=tagging_client)
        resolved = {"example.tagging:build_client": factory, **(objects or {})}
        handlers: dict[int, Callable[..., None]] = {}

        def tracking_signal(signum: int, handler: Callable[..., None]) -> None:
            handlers[signum] = handler

        with (
            patch("alb_controller.src.__main__.load_object", side_effect=resolved.__getitem__),
            patch("alb_controller.src.__main__.load_kube_configuration"),
            patch("alb_controller.src.__main__.build_clients") as mock_clients,
            patch(
                "alb_controller.src.__main__.build_controller", return_value=controller
            ) as mock_build,
            patch("alb_controller.src.__main__.start_health_server") as mock_health,
            patch("alb_controller.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            mock_health.return_value = MagicMock()
            try:
                main()
            finally:
                self.build_kwargs = mock_build.call_args.kwargs if mock_build.called else {}
                self.clients = mock_clients.return_value
                self.factory = factory
                self.tagging_client = tagging_client
        return mock_health, mock_build, handlers

    def _controller(self) -> MagicMock:
        controller = MagicMock()
        controller.ready = threading.Event()
        controller.state = ControllerState.RUNNING
        return controller

    def test_main_wires_controller_and_shuts_down_health_server(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        self._set_env(monkeypatch)
        controller = self._controller()

        mock_health, _, _ = self._run_main(controller)

        controller.start.assert_called_once()
        self.factory.assert_called_once()
        assert self.factory.call_args.args[0].cluster_name == "my-cluster"
        assert self.build_kwargs["tagging_client"] is self.tagging_client
        assert self.build_kwargs["clients"] is self.clients
        assert self.build_kwargs["ingress_reconciler"] is None
        assert mock_health.call_args.kwargs["port"] == 10254
        assert mock_health.call_args.kwargs["ready"] is controller.ready
        mock_health.return_value.shutdown.assert_called_once()

    def test_liveness_tracks_controller_state(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self._set_env(monkeypatch)
        controller = self._controller()

        mock_health, _, _ = self._run_main(controller)
        alive = mock_health.call_args.kwargs["alive"]

        assert alive() is True
        controller.state = ControllerState.STOPPED
        assert alive() is False

    def test_main_loads_custom_ingress_reconciler(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self._set_env(monkeypatch)
        monkeypatch.setenv("INGRESS_RECONCILER", "example.reconcile:apply")

        def reconciler(ingresses: list[Any], running_config: Any) -> None:
            return None

        self._run_main(self._controller(), {"example.reconcile:apply": reconciler})

        assert self.build_kwargs["ingress_reconciler"] is reconciler

    def test_signal_handlers_stop_controller_once(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self._set_env(monkeypatch)
        controller = self._controller()
        controller.stop.side_effect = [None, ShutdownInProgressError("shutdown already in progress")]

        _, _, handlers = self._run_main(controller)

        assert set(handlers) == {signal.SIGTERM, signal.SIGINT}
        handlers[signal.SIGTERM](signal.SIGTERM, None)
        handlers[signal.SIGINT](signal.SIGINT, None)
        assert controller.stop.call_count == 2

    def test_main_exits_when_cluster_name_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self._set_env(monkeypatch)
        monkeypatch.delenv("CLUSTER_NAME")
        controller = self._controller()

        with pytest.raises(SystemExit) as excinfo:
            self._run_main(controller)

        assert excinfo.value.code == 2
        controller.start.assert_not_called()

    def test_main_exits_without_provider_factory(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self._set_env(monkeypatch)
        monkeypatch.setenv("PROVIDER_CLIENT_FACTORY", "  ")

        with pytest.raises(SystemExit) as excinfo:
            self._run_main(self._controller())

        assert excinfo.value.code == 2

    def test_main_exits_nonzero_when_startup_sync_fails(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        self._set_env(monkeypatch)
        controller = self._controller()
        controller.start.side_effect = ProviderSyncError("tagging API unavailable")

        with (
            patch("alb_controller.src.__main__.start_health_server") as mock_health,
            patch("alb_controller.src.__main__.load_object", return_value=MagicMock()),
            patch("alb_controller.src.__main__.load_kube_configuration"),
            patch("alb_controller.src.__main__.build_clients"),
            patch("alb_controller.src.__main__.build_controller", return_value=controller),
            patch("alb_controller.src.__main__.signal.signal"),
            pytest.raises(SystemExit) as excinfo,
        ):
            main()

        assert excinfo.value.code == 1
        mock_health.return_value.shutdown.assert_called_once()
