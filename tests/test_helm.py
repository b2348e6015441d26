"""Tests for the Helm release driver."""

from __future__ import annotations

import json
import re
import subprocess
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from fakes import standard_spec

from stackop.commands import CommandError
from stackop.drivers import MANAGED_BY_LABEL, STABLE_NAME_LABEL
from stackop.helm import HelmClient, HelmCommandError, HelmReleaseDriver
from stackop.resources import ResourceKind
from stackop.retry import CallableAction, RetryController, RetryPolicy
from stackop.waiter import ReadinessState

STACK_ID = "demo-dev"


async def _no_sleep(seconds: float) -> None:
    pass


class FakeHelm:
    """Runner that emulates helm list / upgrade / uninstall in memory."""

    def __init__(self) -> None:
        self.releases: list[dict[str, Any]] = []
        self.commands: list[list[str]] = []
        self.fail_next: CommandError | None = None

    def add(self, name: str, namespace: str, status: str = "deployed", **labels: str) -> None:
        self.releases.append(
            {"name": name, "namespace": namespace, "status": status, "labels": labels}
        )

    @staticmethod
    def _option(args: list[str], flag: str) -> str | None:
        return args[args.index(flag) + 1] if flag in args else None

    async def __call__(self, cmd: list[str], *, timeout: int) -> subprocess.CompletedProcess[str]:
        self.commands.append(cmd)
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

        verb = cmd[1]
        stdout = ""
        if verb == "list":
            found = self.releases
            name_filter = self._option(cmd, "--filter")
            if name_filter is not None:
                found = [r for r in found if re.search(name_filter, r["name"])]
            selector = self._option(cmd, "--selector")
            if selector is not None:
                wanted = dict(pair.split("=") for pair in selector.split(","))
                found = [
                    r for r in found if all(r["labels"].get(k) == v for k, v in wanted.items())
                ]
            rows = [{k: v for k, v in r.items() if k != "labels"} for r in found]
            stdout = json.dumps(rows)
        elif verb == "upgrade":
            name = cmd[3]
            namespace = self._option(cmd, "--namespace")
            labels = dict(pair.split("=") for pair in self._option(cmd, "--labels").split(","))
            self.releases = [r for r in self.releases if r["name"] != name]
            self.add(name, namespace, **labels)
        elif verb == "uninstall":
            name = cmd[2]
            namespace = self._option(cmd, "--namespace")
            self.releases = [
                r for r in self.releases if (r["name"], r["namespace"]) != (name, namespace)
            ]
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")


def owner_labels(stable_name: str) -> dict[str, str]:
    return {MANAGED_BY_LABEL: STACK_ID, STABLE_NAME_LABEL: stable_name}


def empty_session() -> MagicMock:
    """Session whose clusters have no deployments, so every release is ready."""
    session = MagicMock()
    apps_api = MagicMock()
    apps_api.list_namespaced_deployment.return_value = MagicMock(items=[])

    async def apps():
        return apps_api

    async def core():
        return MagicMock()

    session.apps = apps
    session.core = core

    async def call(func, *args, **kwargs):
        return func(*args, **kwargs)

    session.call = call
    return session


@pytest.fixture
def helm() -> FakeHelm:
    return FakeHelm()


@pytest.fixture
def driver(helm: FakeHelm) -> HelmReleaseDriver:
    return HelmReleaseDriver(
        ResourceKind.RELEASE, HelmClient("aks-demo", runner=helm), empty_session(), STACK_ID
    )


class TestHelmClient:
    """Tests for HelmClient command construction."""

    @pytest.mark.asyncio
    async def test_upgrade_install_arguments(self, helm: FakeHelm) -> None:
        chart = standard_spec().resource("app").bind({"ns": "demo", "redis": "r"}).chart
        assert chart is not None

        await HelmClient("aks-demo", 300, runner=helm).upgrade_install(
            "app", chart, labels={"b": "2", "a": "1"}
        )

        (cmd,) = helm.commands
        assert cmd[:5] == ["helm", "upgrade", "--install", "app", "app"]
        assert "--wait" not in cmd
        assert FakeHelm._option(cmd, "--namespace") == "demo"
        assert FakeHelm._option(cmd, "--labels") == "a=1,b=2"
        assert FakeHelm._option(cmd, "--timeout") == "300s"
        assert FakeHelm._option(cmd, "--kube-context") == "aks-demo"
        assert "--create-namespace" in cmd

    @pytest.mark.asyncio
    async def test_oci_repository_becomes_chart_reference(self, helm: FakeHelm) -> None:
        chart = standard_spec().resource("app").chart
        assert chart is not None
        chart = chart.model_copy(
            update={"repository": "oci://registry.example.com/charts/", "namespace": "demo"}
        )

        await HelmClient(runner=helm).upgrade_install("app", chart, labels={"a": "1"})

        (cmd,) = helm.commands
        assert cmd[4] == "oci://registry.example.com/charts/app"
        assert "--repo" not in cmd

    @pytest.mark.asyncio
    async def test_errors_are_wrapped(self, helm: FakeHelm) -> None:
        helm.fail_next = CommandError("helm failed", returncode=1, retryable=False)

        with pytest.raises(HelmCommandError) as exc_info:
            await HelmClient(runner=helm).list_releases()

        assert exc_info.value.returncode == 1
        assert not exc_info.value.retryable


class TestHelmReleaseDriver:
    """Tests for HelmReleaseDriver."""

    def test_rejects_non_helm_kind(self, helm: FakeHelm) -> None:
        with pytest.raises(ValueError):
            HelmReleaseDriver(ResourceKind.CACHE, HelmClient(runner=helm), empty_session(), "x")

    @pytest.mark.asyncio
    async def test_describe_foreign_release(
        self, helm: FakeHelm, driver: HelmReleaseDriver
    ) -> None:
        helm.add("app", "default")

        observed = await driver.describe("app")

        assert observed is not None
        assert observed.managed_by_us is False
        assert observed.healthy is True
        assert observed.details["namespace"] == "default"

    @pytest.mark.asyncio
    async def test_describe_absent(self, driver: HelmReleaseDriver) -> None:
        assert await driver.describe("app") is None

    @pytest.mark.asyncio
    async def test_find_managed_by_labels(self, helm: FakeHelm, driver: HelmReleaseDriver) -> None:
        helm.add("app", "default")
        helm.add("app-x1", "demo", **owner_labels("app"))

        observed = await driver.find_managed("app")

        assert observed is not None
        assert observed.name == "app-x1"
        assert observed.managed_by_us is True

    @pytest.mark.asyncio
    async def test_apply_labels_release(self, helm: FakeHelm, driver: HelmReleaseDriver) -> None:
        definition = standard_spec().resource("app").bind({"ns": "demo", "redis": "r"})

        await driver.apply("app", definition)

        (release,) = helm.releases
        assert release["namespace"] == "demo"
        assert release["labels"] == owner_labels("app")
        readiness = await driver.readiness("app")
        assert readiness.state == ReadinessState.READY

    @pytest.mark.asyncio
    async def test_apply_clears_stuck_release_first(
        self, helm: FakeHelm, driver: HelmReleaseDriver
    ) -> None:
        helm.add("app", "demo", status="pending-install")
        definition = standard_spec().resource("app").bind({"ns": "demo", "redis": "r"})

        await driver.apply("app", definition)

        verbs = [cmd[1] for cmd in helm.commands]
        assert "uninstall" in verbs
        uninstall = helm.commands[verbs.index("uninstall")]
        assert "--no-hooks" in uninstall
        assert verbs.index("uninstall") < verbs.index("upgrade")

    @pytest.mark.asyncio
    async def test_readiness_states(self, helm: FakeHelm, driver: HelmReleaseDriver) -> None:
        assert (await driver.readiness("app")).state == ReadinessState.PENDING

        helm.add("app", "demo", status="pending-upgrade")
        assert (await driver.readiness("app")).state == ReadinessState.PENDING

        helm.releases[0]["status"] = "failed"
        failed = await driver.readiness("app")
        assert failed.state == ReadinessState.FAILED
        assert failed.permanent is False

    @pytest.mark.asyncio
    async def test_reset_leaves_deployed_release(
        self, helm: FakeHelm, driver: HelmReleaseDriver
    ) -> None:
        helm.add("app", "demo")

        await driver.reset("app")

        assert len(helm.releases) == 1

    @pytest.mark.asyncio
    async def test_delete(self, helm: FakeHelm, driver: HelmReleaseDriver) -> None:
        helm.add("app", "demo")

        await driver.delete("app")
        await driver.delete("app")

        assert helm.releases == []

    @pytest.mark.asyncio
    async def test_discover_marks_ownership(
        self, helm: FakeHelm, driver: HelmReleaseDriver
    ) -> None:
        helm.add("app", "default")
        helm.add("app-x1", "demo", **owner_labels("app"))
        helm.add("other", "demo", **owner_labels("other"))

        found = await driver.discover(r"^app(-[a-z0-9]+)*$")

        assert {(o.name, o.managed_by_us) for o in found} == {("app", False), ("app-x1", True)}

    def test_retry_classification(self, driver: HelmReleaseDriver) -> None:
        assert driver.is_retryable(CommandError("x", retryable=True))
        assert not driver.is_retryable(CommandError("x", retryable=False))
        assert driver.is_retryable(ConnectionError())
        assert not driver.is_retryable(ValueError())

    @pytest.mark.asyncio
    async def test_failed_install_is_not_retried(self) -> None:
        """helm rejecting an install (missing chart version) stops after one attempt."""
        calls: list[list[str]] = []

        def fake_run(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
            calls.append(cmd)
            if cmd[1] == "list":
                return subprocess.CompletedProcess(cmd, 0, stdout="[]", stderr="")
            return subprocess.CompletedProcess(
                cmd, 1, stdout="", stderr='Error: chart "app" version "9.9.9" not found'
            )

        driver = HelmReleaseDriver(
            ResourceKind.RELEASE, HelmClient("aks-demo"), empty_session(), STACK_ID
        )
        definition = standard_spec().resource("app").bind({"ns": "demo", "redis": "r"})
        action = CallableAction(
            "release/app",
            lambda: driver.apply("app", definition),
            classify=driver.is_retryable,
        )

        with patch("stackop.commands.subprocess.run", side_effect=fake_run):
            outcome = await RetryController(sleep=_no_sleep).execute(
                action, RetryPolicy(max_attempts=3)
            )

        assert not outcome.success
        assert outcome.attempts == 1
        assert isinstance(outcome.last_error, HelmCommandError)
        assert "not found" in str(outcome.last_error)
        assert [c[1] for c in calls].count("upgrade") == 1

    @pytest.mark.asyncio
    async def test_guidance_uses_known_namespace(
        self, helm: FakeHelm, driver: HelmReleaseDriver
    ) -> None:
        helm.add("app", "demo")
        await driver.describe("app")

        assert driver.guidance("app") == [
            "helm uninstall app --namespace demo --kube-context aks-demo"
        ]
