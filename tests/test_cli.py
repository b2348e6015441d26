"""Tests for the stackop click CLI."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner
from fakes import StubReconciler

from stackop.cli import cli

STACK_YAML = """
resources:
  - name: net
    kind: network
    stableName: vnet-demo
  - name: aks
    kind: cluster
    stableName: aks-demo
    dependsOn: [net]
  - name: ns
    kind: namespace
    stableName: demo
    dependsOn: [aks]
"""

ENV = {
    "STACK_NAME": "demo",
    "AZURE_SUBSCRIPTION_ID": "00000000-0000-0000-0000-000000000000",
    "AZURE_LOCATION": "westeurope",
    "ENABLE_AUDIT_LOGGING": "false",
    "DRY_RUN": "false",
}


@pytest.fixture
def spec_path(tmp_path: Path) -> Path:
    path = tmp_path / "stack.yaml"
    path.write_text(STACK_YAML)
    return path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def tools(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("stackop.commands.shutil.which", lambda name: f"/usr/bin/{name}")


@pytest.fixture
def reconciler(monkeypatch: pytest.MonkeyPatch) -> StubReconciler:
    stub = StubReconciler()
    monkeypatch.setattr(
        "stackop.cli.StackReconciler.from_config", lambda config, spec: stub
    )
    return stub


class TestValidate:
    """Tests for `stackop validate`."""

    def test_prints_dependency_order(
        self, runner: CliRunner, spec_path: Path, tools: None
    ) -> None:
        result = runner.invoke(cli, ["validate", "--spec", str(spec_path)], env=ENV)

        assert result.exit_code == 0, result.output
        assert "Stack demo-dev (resource group rg-demo-dev)" in result.output
        assert "1. net [network] vnet-demo" in result.output
        assert "3. ns [namespace] demo <- aks" in result.output
        assert "3 resources valid" in result.output

    def test_missing_configuration(self, runner: CliRunner, spec_path: Path) -> None:
        env = {**ENV, "STACK_NAME": ""}

        result = runner.invoke(cli, ["validate", "--spec", str(spec_path)], env=env)

        assert result.exit_code == 2
        assert "STACK_NAME" in result.output

    def test_invalid_spec(self, runner: CliRunner, spec_path: Path, tools: None) -> None:
        spec_path.write_text("resources: [unclosed")

        result = runner.invoke(cli, ["validate", "--spec", str(spec_path)], env=ENV)

        assert result.exit_code == 2
        assert "Invalid YAML" in result.output

    def test_missing_tool(
        self, runner: CliRunner, spec_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "stackop.commands.shutil.which",
            lambda name: None if name == "az" else f"/usr/bin/{name}",
        )

        result = runner.invoke(cli, ["validate", "--spec", str(spec_path)], env=ENV)

        assert result.exit_code == 2
        assert "Required tools not found on PATH: az" in result.output


class TestOperations:
    """Tests for deploy, plan and destroy."""

    def test_deploy(
        self, runner: CliRunner, spec_path: Path, tools: None, reconciler: StubReconciler
    ) -> None:
        result = runner.invoke(cli, ["deploy", "--spec", str(spec_path)], env=ENV)

        assert result.exit_code == 0, result.output
        assert reconciler.calls == ["deploy"]

    def test_dry_run_plans(
        self, runner: CliRunner, spec_path: Path, tools: None, reconciler: StubReconciler
    ) -> None:
        result = runner.invoke(
            cli, ["deploy", "--dry-run", "-o", "json", "--spec", str(spec_path)], env=ENV
        )

        assert result.exit_code == 0, result.output
        assert reconciler.calls == ["plan"]
        assert json.loads(result.stdout)["operation"] == "plan"

    def test_failed_report_exits_one(
        self,
        runner: CliRunner,
        spec_path: Path,
        tools: None,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        stub = StubReconciler(succeeded=False)
        monkeypatch.setattr("stackop.cli.StackReconciler.from_config", lambda config, spec: stub)

        result = runner.invoke(cli, ["plan", "--spec", str(spec_path)], env=ENV)

        assert result.exit_code == 1
        assert "FAILED" in result.output

    def test_destroy_requires_confirmation(
        self, runner: CliRunner, spec_path: Path, tools: None, reconciler: StubReconciler
    ) -> None:
        result = runner.invoke(cli, ["destroy", "--spec", str(spec_path)], env=ENV, input="n\n")

        assert result.exit_code == 1
        assert "Destroy stack demo-dev (3 resources)" in result.output
        assert reconciler.calls == []

    def test_destroy_with_yes(
        self, runner: CliRunner, spec_path: Path, tools: None, reconciler: StubReconciler
    ) -> None:
        result = runner.invoke(cli, ["destroy", "--yes", "--spec", str(spec_path)], env=ENV)

        assert result.exit_code == 0, result.output
        assert reconciler.calls == ["destroy"]
