"""Kubernetes API session and the namespace driver.

The kubeconfig is loaded lazily on first use: the cluster a stack deploys
into usually does not exist yet when the run starts. After the cluster
becomes ready, the kubeconfig is refreshed (azure_resources.ClusterCredentials)
and invalidate() makes the next call reload it.

All client calls, and the kubeconfig load itself, are synchronous and run
in the default executor with a timeout, like the ARM calls.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from collections.abc import Callable
from typing import Any

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .drivers import MANAGED_BY_LABEL, STABLE_NAME_ANNOTATION, STABLE_NAME_LABEL, ObservedResource
from .models import ResourceDefinition
from .resources import MAX_NAME_LENGTHS, ResourceKind
from .retry import PermanentConfigurationFailure
from .waiter import Readiness

logger = logging.getLogger(__name__)

# Timeout for a single Kubernetes API call (seconds)
KUBE_CALL_TIMEOUT_SECONDS = 60

# HTTP status codes worth another attempt
RETRYABLE_STATUS_CODES = frozenset({409, 429, 500, 502, 503, 504})

# Container waiting reasons that no amount of waiting will fix
TERMINAL_WAITING_REASONS = frozenset(
    {
        "ErrImagePull",
        "ImagePullBackOff",
        "InvalidImageName",
        "CreateContainerConfigError",
        "CreateContainerError",
    }
)


class KubernetesSession:
    """Lazily configured Kubernetes API clients.

    Args:
        context: kubeconfig context; None uses in-cluster config if available,
            then the current context.
    """

    def __init__(self, context: str | None = None) -> None:
        self.context = context
        self._api_client: client.ApiClient | None = None
        self._lock = threading.Lock()

    def _ensure(self) -> client.ApiClient:
        with self._lock:
            if self._api_client is None:
                if self.context is None:
                    try:
                        config.load_incluster_config()
                        self._api_client = client.ApiClient()
                    except config.ConfigException:
                        self._api_client = config.new_client_from_config()
                else:
                    self._api_client = config.new_client_from_config(context=self.context)
                logger.debug("Kubernetes client configured", extra={"context": self.context})
            return self._api_client

    async def _configured(self) -> client.ApiClient:
        # Loading the kubeconfig reads files and may exec an auth plugin
        loop = asyncio.get_event_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, self._ensure), timeout=KUBE_CALL_TIMEOUT_SECONDS
        )

    async def core(self) -> client.CoreV1Api:
        return client.CoreV1Api(await self._configured())

    async def apps(self) -> client.AppsV1Api:
        return client.AppsV1Api(await self._configured())

    def invalidate(self) -> None:
        """Drop the cached client so the next call reloads the kubeconfig."""
        with self._lock:
            self._api_client = None

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a synchronous client call in the executor with a timeout."""
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, lambda: func(*args, **kwargs)),
                timeout=KUBE_CALL_TIMEOUT_SECONDS,
            )
        except TimeoutError:
            logger.error(
                "Kubernetes API call timed out",
                extra={
                    "call": getattr(func, "__name__", "?"),
                    "timeout_seconds": KUBE_CALL_TIMEOUT_SECONDS,
                },
            )
            raise


def is_retryable_kube_error(error: Exception) -> bool:
    """Classify a Kubernetes client error by status code or error type."""
    if isinstance(error, ApiException):
        return error.status in RETRYABLE_STATUS_CODES
    if isinstance(error, urllib3.exceptions.HTTPError):
        return True
    return isinstance(error, (ConnectionError, TimeoutError))


async def workload_readiness(
    session: KubernetesSession, namespace: str, instance: str
) -> Readiness:
    """Readiness of the Deployments and pods of one Helm release.

    Pods stuck on image pulls or bad container config are a terminal
    failure. Anything else that is not ready yet is pending.
    """
    selector = f"app.kubernetes.io/instance={instance}"
    apps = await session.apps()
    core = await session.core()

    deployments = await session.call(
        apps.list_namespaced_deployment, namespace=namespace, label_selector=selector
    )
    for deployment in deployments.items:
        wanted = deployment.spec.replicas if deployment.spec.replicas is not None else 1
        ready = deployment.status.ready_replicas or 0
        if ready < wanted:
            pods = await session.call(
                core.list_namespaced_pod, namespace=namespace, label_selector=selector
            )
            for pod in pods.items:
                for status in pod.status.container_statuses or []:
                    waiting = status.state.waiting if status.state else None
                    if waiting is not None and waiting.reason in TERMINAL_WAITING_REASONS:
                        return Readiness.failed(
                            f"pod {pod.metadata.name}: {waiting.reason}", permanent=True
                        )
            return Readiness.pending(
                f"deployment {deployment.metadata.name}: {ready}/{wanted} replicas ready"
            )
    return Readiness.ready(f"release {instance} workloads ready")


class NamespaceDriver:
    """ResourceDriver for namespaces."""

    kind = ResourceKind.NAMESPACE
    max_name_length = MAX_NAME_LENGTHS[ResourceKind.NAMESPACE]

    def __init__(self, session: KubernetesSession, stack_id: str) -> None:
        self._session = session
        self._stack_id = stack_id

    def _observe(self, namespace: Any) -> ObservedResource:
        labels = namespace.metadata.labels or {}
        phase = namespace.status.phase if namespace.status else None
        return ObservedResource(
            name=namespace.metadata.name,
            healthy=phase == "Active",
            managed_by_us=labels.get(MANAGED_BY_LABEL) == self._stack_id,
            details={"phase": phase},
        )

    async def describe(self, name: str) -> ObservedResource | None:
        core = await self._session.core()
        try:
            namespace = await self._session.call(core.read_namespace, name=name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return self._observe(namespace)

    async def find_managed(self, stable_name: str) -> ObservedResource | None:
        core = await self._session.core()
        selector = f"{MANAGED_BY_LABEL}={self._stack_id},{STABLE_NAME_LABEL}={stable_name}"
        namespaces = await self._session.call(core.list_namespace, label_selector=selector)
        found = [self._observe(ns) for ns in namespaces.items]
        if not found:
            return None
        healthy = [o for o in found if o.healthy]
        return (healthy or found)[0]

    async def apply(self, name: str, definition: ResourceDefinition) -> None:
        core = await self._session.core()
        labels = {
            **{str(k): str(v) for k, v in (definition.properties.get("labels") or {}).items()},
            MANAGED_BY_LABEL: self._stack_id,
            STABLE_NAME_LABEL: definition.stable_name,
        }
        annotations = {
            **{
                str(k): str(v)
                for k, v in (definition.properties.get("annotations") or {}).items()
            },
            STABLE_NAME_ANNOTATION: definition.stable_name,
        }
        body = client.V1Namespace(
            metadata=client.V1ObjectMeta(name=name, labels=labels, annotations=annotations)
        )
        try:
            await self._session.call(core.create_namespace, body=body)
            logger.info("Namespace created", extra={"namespace": name})
            return
        except ApiException as e:
            if e.status != 409:
                raise

        existing = await self.describe(name)
        if existing is None:
            # Deleted between the conflict and the read; the next attempt recreates it
            raise ApiException(status=409, reason=f"namespace {name} is being replaced")
        if not existing.managed_by_us:
            raise PermanentConfigurationFailure(
                f"namespace {name} exists and is not managed by stack {self._stack_id}"
            )
        await self._session.call(
            core.patch_namespace,
            name=name,
            body={"metadata": {"labels": labels, "annotations": annotations}},
        )
        logger.info("Namespace updated", extra={"namespace": name})

    async def readiness(self, name: str) -> Readiness:
        observed = await self.describe(name)
        if observed is None:
            return Readiness.pending(f"namespace {name} not visible yet")
        phase = observed.details.get("phase")
        if phase == "Active":
            return Readiness.ready(f"namespace {name} is Active")
        if phase == "Terminating":
            return Readiness.failed(f"namespace {name} is Terminating", permanent=False)
        return Readiness.pending(f"namespace {name} phase {phase}")

    async def reset(self, name: str) -> None:
        # Namespace creation is atomic, nothing half-applied to clear
        pass

    async def delete(self, name: str) -> None:
        core = await self._session.core()
        try:
            await self._session.call(core.delete_namespace, name=name)
            logger.info("Namespace deletion initiated", extra={"namespace": name})
        except ApiException as e:
            if e.status == 404:
                logger.info("Namespace already gone", extra={"namespace": name})
            else:
                raise

    async def discover(self, pattern: str) -> list[ObservedResource]:
        core = await self._session.core()
        namespaces = await self._session.call(core.list_namespace)
        compiled = re.compile(pattern)
        return [
            self._observe(ns) for ns in namespaces.items if compiled.match(ns.metadata.name)
        ]

    def is_retryable(self, error: Exception) -> bool:
        return is_retryable_kube_error(error)

    def guidance(self, name: str) -> list[str]:
        context = f" --context {self._session.context}" if self._session.context else ""
        return [f"kubectl{context} delete namespace {name}"]
