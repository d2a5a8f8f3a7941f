from unittest.mock import MagicMock

import pytest

from esk_ci.errors import ReporterError, StageError, ValidationError
from esk_ci.escalation import EscalationController, State


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "build.log"
    path.write_text("[INFO] started\n")
    return path


def test_trip_reports_uploads_and_exits(log_file):
    reporter = MagicMock()
    controller = EscalationController(log_file, reporter)

    with pytest.raises(SystemExit) as exc:
        controller.trip("Patch: boom")

    assert exc.value.code == 1
    assert controller.state is State.TERMINATED
    assert controller.report.outcome == "failure"
    assert controller.report.message == "Patch: boom"
    assert controller.report.log_path == log_file
    text = reporter.send_message.call_args.args[0]
    assert "ERROR: Patch: boom" in text
    reporter.send_document.assert_called_once_with(log_file, "Build log")


def test_failed_report_still_uploads_log(log_file):
    reporter = MagicMock()
    reporter.send_message.side_effect = ReporterError("sendMessage: Bad Request")
    controller = EscalationController(log_file, reporter)

    with pytest.raises(SystemExit) as exc:
        controller.trip("Build: make failed")

    assert exc.value.code == 1
    reporter.send_document.assert_called_once()


def test_error_while_reporting_does_not_escalate_again(log_file):
    reporter = MagicMock()
    controller = EscalationController(log_file, reporter)

    def send_and_fail(text):
        # A failure raised from inside the handler routes back to trip()
        controller.trip("transport exploded")

    reporter.send_message.side_effect = send_and_fail

    with pytest.raises(SystemExit) as exc:
        controller.trip("Package: zip failed")

    assert exc.value.code == 1
    assert reporter.send_message.call_count == 1
    reporter.send_document.assert_not_called()
    assert controller.state is State.TERMINATED
    assert controller.report.message == "Package: zip failed"


def test_trip_without_reporter(log_file):
    controller = EscalationController(log_file)
    with pytest.raises(SystemExit) as exc:
        controller.trip("Required GitHub PAT missing: GH_TOKEN")
    assert exc.value.code == 1


def test_missing_log_is_not_uploaded(tmp_path):
    reporter = MagicMock()
    with pytest.raises(SystemExit):
        EscalationController(tmp_path / "none.log", reporter).trip("x")
    reporter.send_message.assert_called_once()
    reporter.send_document.assert_not_called()


@pytest.mark.parametrize("error,expected", [
    (StageError("Patch not found: lxc_support.patch"), "Patch: Patch not found: lxc_support.patch"),
    (ValidationError("Invalid KSU='X'"), "Patch: Invalid KSU='X'"),
    (KeyError("assets"), "Patch: unexpected KeyError: 'assets'"),
])
def test_guard_routes_errors_to_trip(log_file, error, expected):
    controller = EscalationController(log_file, MagicMock())
    with pytest.raises(SystemExit):
        with controller.guard("Patch"):
            raise error
    assert controller.report.message == expected


def test_guard_passes_success_through(log_file):
    controller = EscalationController(log_file, MagicMock())
    with controller.guard("Build"):
        value = 1
    assert value == 1
    assert controller.state is State.ARMED
