"""Tests for the environment-driven entrypoint and logging setup."""

import io
import json
import logging
import sys
from pathlib import Path

import pytest
from fakes import StubReconciler

from stackop import main as main_module
from stackop.main import (
    EXIT_CONFIGURATION_ERROR,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    JsonFormatter,
    execute,
    exit_code,
    setup_logging,
)
from stackop.report import Operation


@pytest.fixture
def stack_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    spec_file = tmp_path / "stack.yaml"
    spec_file.write_text("resources: []\n")
    monkeypatch.setenv("STACK_NAME", "demo")
    monkeypatch.setenv("AZURE_SUBSCRIPTION_ID", "00000000-0000-0000-0000-000000000000")
    monkeypatch.setenv("AZURE_LOCATION", "westeurope")
    monkeypatch.setenv("SPEC_FILE", str(spec_file))
    monkeypatch.delenv("DRY_RUN", raising=False)
    return spec_file


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_extra_fields_are_top_level(self) -> None:
        record = logging.LogRecord(
            "stackop.reconciler", logging.INFO, __file__, 1, "Resource ready", None, None
        )
        record.resource = "redis"
        record.attempt = 2

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Resource ready"
        assert data["level"] == "INFO"
        assert data["logger"] == "stackop.reconciler"
        assert data["resource"] == "redis"
        assert data["attempt"] == 2
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data

    def test_exception_is_included(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )

        data = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


class TestSetupLogging:
    def test_json_to_stream_and_quiet_sdks(self) -> None:
        stream = io.StringIO()

        setup_logging(json_output=True, stream=stream)
        logging.getLogger("stackop.test").info("hello", extra={"stack": "demo-dev"})

        line = json.loads(stream.getvalue().strip())
        assert line["stack"] == "demo-dev"
        assert logging.getLogger("azure").level == logging.WARNING
        assert logging.getLogger("kubernetes").level == logging.WARNING

    def test_plain_text(self) -> None:
        stream = io.StringIO()

        setup_logging(json_output=False, stream=stream)
        logging.getLogger("stackop.test").warning("plain")

        assert "WARNING" in stream.getvalue()
        assert "stackop.test: plain" in stream.getvalue()


class TestExecute:
    """Tests for execute() and exit_code()."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("operation", "call"),
        [(Operation.DEPLOY, "deploy"), (Operation.PLAN, "plan"), (Operation.DESTROY, "destroy")],
    )
    async def test_dispatch(self, operation: Operation, call: str) -> None:
        reconciler = StubReconciler()

        report = await execute(reconciler, operation)  # type: ignore[arg-type]

        assert reconciler.calls == [call]
        assert report.operation == operation
        assert exit_code(report) == EXIT_SUCCESS

    @pytest.mark.asyncio
    async def test_failed_report_exit_code(self) -> None:
        reconciler = StubReconciler(succeeded=False)

        report = await execute(reconciler, Operation.DEPLOY)  # type: ignore[arg-type]

        assert exit_code(report) == EXIT_FAILURE


class TestMain:
    """Tests for main()."""

    @pytest.mark.asyncio
    async def test_missing_configuration(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("STACK_NAME", raising=False)

        assert await main_module.main() == EXIT_CONFIGURATION_ERROR

    @pytest.mark.asyncio
    async def test_invalid_spec(self, stack_env: Path) -> None:
        stack_env.write_text("resources: [unclosed")

        assert await main_module.main() == EXIT_CONFIGURATION_ERROR

    @pytest.mark.asyncio
    async def test_dry_run_plans_and_prints_json(
        self,
        stack_env: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        reconciler = StubReconciler()
        monkeypatch.setenv("DRY_RUN", "true")
        monkeypatch.setattr(main_module, "build_reconciler", lambda config: reconciler)
        monkeypatch.setattr(main_module, "setup_logging", lambda **kwargs: None)

        code = await main_module.main()

        assert code == EXIT_SUCCESS
        assert reconciler.calls == ["plan"]
        report = json.loads(capsys.readouterr().out)
        assert report["operation"] == "plan"

    @pytest.mark.asyncio
    async def test_crash_is_failure(
        self, stack_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        class Crashing(StubReconciler):
            async def deploy(self, dry_run: bool = False):
                raise RuntimeError("unexpected")

        monkeypatch.setattr(main_module, "build_reconciler", lambda config: Crashing())

        assert await main_module.main() == EXIT_FAILURE
