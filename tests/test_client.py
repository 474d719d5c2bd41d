# Copyright (c) Syntropy Systems
"""Tests for the coordinator client and notifier."""

from __future__ import annotations

import json
import logging
import threading
from unittest.mock import MagicMock, patch

import httpx
import pytest

from labhand.client import CoordinatorClient
from labhand.errors import ReportingError
from labhand.models.api import MachineIdentity, MachineOS, MachineSpec
from labhand.notify import Notifier


class RecordingTransport:
    """httpx transport handler that records requests."""

    def __init__(self, status_code: int = 200, body: object = None) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = status_code
        self.body = body

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.body is None:
            return httpx.Response(self.status_code, text="OK")
        return httpx.Response(self.status_code, json=self.body)


def make_client(handler: RecordingTransport) -> CoordinatorClient:
    return CoordinatorClient("http://lab:5080/", transport=httpx.MockTransport(handler))


def sample_spec() -> MachineSpec:
    return MachineSpec(
        address="http://gpu-box:5081",
        hostname="gpu-box",
        os=MachineOS(type="Linux", platform="linux", arch="x86_64", release="6.1.0"),
        cpus=["Xeon", "Xeon"],
        mem="31.3GB",
        gpus=["NVIDIA Corporation GA102"],
    )


class TestCoordinatorClient:
    """Outbound calls and their wire format."""

    def test_mark_started(self) -> None:
        handler = RecordingTransport()
        with make_client(handler) as client:
            client.mark_started("abc123")

        (request,) = handler.requests
        assert request.method == "PUT"
        assert str(request.url) == "http://lab:5080/api/experiments/abc123/started"

    def test_report_result(self) -> None:
        handler = RecordingTransport()
        with make_client(handler) as client:
            client.report_result("abc123", {"loss": [0.5, 0.25], "_scores": {"acc": 0.9}})

        (request,) = handler.requests
        assert request.method == "PUT"
        assert request.url.path == "/api/experiments/abc123"
        assert json.loads(request.content) == {"loss": [0.5, 0.25], "_scores": {"acc": 0.9}}

    def test_report_status(self) -> None:
        handler = RecordingTransport()
        with make_client(handler) as client:
            client.report_status("abc123", "fail")

        (request,) = handler.requests
        assert request.url.path == "/api/experiments/abc123"
        assert json.loads(request.content) == {"status": "fail"}

    def test_experiment_id_is_quoted(self) -> None:
        handler = RecordingTransport()
        with make_client(handler) as client:
            client.mark_started("exp#1?x y")
            client.report_status("exp#1?x y", "success")

        started, status = handler.requests
        assert started.url.raw_path == b"/api/experiments/exp%231%3Fx%20y/started"
        assert status.url.raw_path == b"/api/experiments/exp%231%3Fx%20y"
        assert started.url.query == b""

    def test_mark_finished(self) -> None:
        handler = RecordingTransport()
        with make_client(handler) as client:
            client.mark_finished("abc123")

        (request,) = handler.requests
        assert request.method == "PUT"
        assert request.url.path == "/api/experiments/abc123/finished"

    def test_register_machine(self) -> None:
        handler = RecordingTransport(
            body={"_id": "m-42", "address": "http://gpu-box:5081", "hostname": "gpu-box"},
        )
        with make_client(handler) as client:
            identity = client.register_machine(sample_spec())

        (request,) = handler.requests
        assert request.method == "POST"
        assert request.url.path == "/api/machines"
        sent = json.loads(request.content)
        assert sent["hostname"] == "gpu-box"
        assert sent["os"]["arch"] == "x86_64"
        assert sent["gpus"] == ["NVIDIA Corporation GA102"]

        assert identity.id == "m-42"
        assert identity.address == "http://gpu-box:5081"
        # Extra coordinator fields survive a save/load cycle
        assert identity.model_dump(by_alias=True)["hostname"] == "gpu-box"

    def test_http_error_raises_reporting_error(self) -> None:
        handler = RecordingTransport(status_code=500, body={"detail": "database offline"})
        with make_client(handler) as client, pytest.raises(ReportingError, match="database offline"):
            client.mark_started("abc123")

    def test_http_error_without_detail(self) -> None:
        handler = RecordingTransport(status_code=404)
        with make_client(handler) as client, pytest.raises(ReportingError, match="404"):
            client.mark_finished("abc123")

    def test_connection_error_raises_reporting_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = CoordinatorClient("http://lab:5080", transport=httpx.MockTransport(refuse))
        with client, pytest.raises(ReportingError, match="Connection error"):
            client.report_status("abc123", "success")

    def test_invalid_registration_response(self) -> None:
        handler = RecordingTransport(body=["not", "an", "object"])
        with make_client(handler) as client, pytest.raises(ReportingError, match="Unexpected response"):
            _ = client.register_machine(sample_spec())

    def test_request_paths(self) -> None:
        """Each operation goes through _request with its documented route."""
        client = make_client(RecordingTransport())
        request_mock = MagicMock(return_value=None)
        with patch.object(client, "_request", request_mock):
            client.mark_started("e1")
            client.mark_finished("e1")
        assert request_mock.call_args_list[0].args == ("PUT", "/api/experiments/e1/started")
        assert request_mock.call_args_list[1].args == ("PUT", "/api/experiments/e1/finished")
        client.close()


class TestNotifier:
    """Fire-and-forget delivery."""

    def test_delivers_in_queue_order(self) -> None:
        client = MagicMock()
        notifier = Notifier(client)
        _ = notifier.started("e1")
        _ = notifier.result("e1", {"loss": 1.0})
        _ = notifier.status("e1", "success")
        _ = notifier.finished("e1")
        notifier.close()

        assert [c[0] for c in client.method_calls] == [
            "mark_started",
            "report_result",
            "report_status",
            "mark_finished",
        ]
        client.report_result.assert_called_once_with("e1", {"loss": 1.0})
        client.report_status.assert_called_once_with("e1", "success")

    def test_reporting_error_is_logged_not_raised(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        client = MagicMock()
        client.mark_started.side_effect = ReportingError("Connection error: refused")
        notifier = Notifier(client)

        with caplog.at_level(logging.WARNING, logger="labhand.notify"):
            future = notifier.started("e1")
            assert future.result(timeout=5.0) is None
            _ = notifier.finished("e1")
            assert notifier.flush(timeout=5.0)
        notifier.close()

        assert "Failed to report start of e1" in caplog.text
        client.mark_finished.assert_called_once_with("e1")

    def test_unexpected_error_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        client = MagicMock()
        client.report_result.side_effect = KeyError("boom")
        notifier = Notifier(client)

        with caplog.at_level(logging.ERROR, logger="labhand.notify"):
            assert notifier.result("e1", {}).result(timeout=5.0) is None
        notifier.close()

        assert "Unexpected error reporting result of e1" in caplog.text

    def test_closed_notifier_drops_reports(self, caplog: pytest.LogCaptureFixture) -> None:
        client = MagicMock()
        notifier = Notifier(client)
        notifier.close()

        with caplog.at_level(logging.WARNING, logger="labhand.notify"):
            future = notifier.finished("e1")

        assert future.done()
        assert notifier.flush(timeout=1.0)
        client.mark_finished.assert_not_called()
        assert "dropping report of finish of e1" in caplog.text

    def test_backlog_is_capped(self, caplog: pytest.LogCaptureFixture) -> None:
        release = threading.Event()
        client = MagicMock()
        client.mark_started.side_effect = lambda experiment_id: release.wait(timeout=10.0)
        notifier = Notifier(client, max_pending=2)

        with caplog.at_level(logging.WARNING, logger="labhand.notify"):
            _ = notifier.started("e1")
            _ = notifier.started("e2")
            dropped = notifier.started("e3")

        assert dropped.done()
        assert notifier.pending == 2
        assert "dropping report of start of e3" in caplog.text

        release.set()
        assert notifier.flush(timeout=5.0)
        notifier.close()

        assert [c.args for c in client.mark_started.call_args_list] == [("e1",), ("e2",)]
        assert notifier.pending == 0
