from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    CoordinationV1Api,
    CoreV1Api,
    CoreV1Event,
    NetworkingV1Api,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

EVENT_COMPONENT = "aws-alb-ingress-controller"
EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


@dataclass(frozen=True)
class KubeClients:
    """Kubernetes API clients, constructed once and passed to every component."""

    core: CoreV1Api
    networking: NetworkingV1Api
    coordination: CoordinationV1Api


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    return KubeClients(
        core=client.CoreV1Api(),
        networking=client.NetworkingV1Api(),
        coordination=client.CoordinationV1Api(),
    )


def patch_ingress_status(
    networking_api: NetworkingV1Api,
    namespace: str,
    name: str,
    hostnames: list[str],
) -> None:
    """Replace ``status.loadBalancer.ingress`` of an Ingress with *hostnames*.

    An empty list clears the published addresses.
    """
    body = {
        "status": {
            "loadBalancer": {
                "ingress": [{"hostname": hostname} for hostname in hostnames]
            }
        }
    }
    networking_api.patch_namespaced_ingress_status(
        name=name,
        namespace=namespace,
        body=body,
    )


class EventRecorder:
    """Records Kubernetes Events on Ingress objects so users see them in ``kubectl describe``.

    Events are created in the namespace of the object they describe.  A
    failed write is logged and dropped; it never fails the caller.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = EVENT_COMPONENT,
        host: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.host = host if host is not None else os.getenv("NODE_NAME", "")
        self.logger = logger or LOGGER

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> bool:
        """Record one event about *obj*.  Returns True when the API accepted it."""
        metadata = getattr(obj, "metadata", None)
        name = getattr(metadata, "name", None)
        if not name:
            self.logger.debug("Not recording %s event for object without a name", reason)
            return False
        namespace = getattr(metadata, "namespace", None) or "default"
        now = datetime.now(UTC)
        body = CoreV1Event(
            metadata=V1ObjectMeta(generate_name=f"{name}.", namespace=namespace),
            involved_object=V1ObjectReference(
                api_version="networking.k8s.io/v1",
                kind="Ingress",
                name=name,
                namespace=namespace,
                uid=getattr(metadata, "uid", None),
                resource_version=getattr(metadata, "resource_version", None),
            ),
            type=event_type,
            reason=reason,
            message=message,
            source=V1EventSource(component=self.component, host=self.host or None),
            reporting_component=self.component,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=namespace, body=body)
        except ApiException as exc:
            self.logger.warning(
                "Failed to record %s event on %s/%s: %s", reason, namespace, name, exc.reason
            )
            return False
        return True
