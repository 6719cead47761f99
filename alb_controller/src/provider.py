from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from alb_controller.src.kube import EVENT_TYPE_WARNING, EventRecorder
from alb_controller.src.taskqueue import object_key

LOGGER = logging.getLogger(__name__)

NAMESPACE_TAG = "kubernetes.io/namespace"
INGRESS_NAME_TAG = "kubernetes.io/ingress-name"


@dataclass(frozen=True)
class TaggedResource:
    """A cloud resource as reported by the resource-tagging service."""

    arn: str
    tags: Mapping[str, str] = field(default_factory=dict)
    dns_name: str | None = None

    def ingress_key(self) -> str | None:
        """Return ``namespace/name`` of the owning ingress, or None if untagged."""
        namespace = self.tags.get(NAMESPACE_TAG)
        name = self.tags.get(INGRESS_NAME_TAG)
        if not namespace or not name:
            return None
        return f"{namespace}/{name}"


@dataclass(frozen=True)
class ClusterResources:
    """Every resource carrying this cluster's ownership tag."""

    load_balancers: tuple[TaggedResource, ...] = ()
    target_groups: tuple[TaggedResource, ...] = ()
    listeners: tuple[TaggedResource, ...] = ()
    listener_rules: tuple[TaggedResource, ...] = ()
    subnets: tuple[TaggedResource, ...] = ()


@dataclass(frozen=True)
class IngressBinding:
    """An ingress and the cloud resources whose ownership tags name it."""

    key: str
    ingress: Any
    load_balancer: TaggedResource | None = None
    target_groups: tuple[TaggedResource, ...] = ()
    listeners: tuple[TaggedResource, ...] = ()
    listener_rules: tuple[TaggedResource, ...] = ()

    @property
    def hostname(self) -> str | None:
        if self.load_balancer is None:
            return None
        return self.load_balancer.dns_name


@dataclass(frozen=True)
class RunningConfiguration:
    """Snapshot of observed cloud state, replaced wholesale by each provider sync."""

    ingresses: tuple[IngressBinding, ...] = ()
    resources: ClusterResources | None = None
    synced_at: datetime | None = None

    def binding(self, key: str) -> IngressBinding | None:
        for binding in self.ingresses:
            if binding.key == key:
                return binding
        return None


def _group_by_ingress(resources: Iterable[TaggedResource]) -> dict[str, list[TaggedResource]]:
    grouped: dict[str, list[TaggedResource]] = {}
    for resource in resources:
        key = resource.ingress_key()
        if key is not None:
            grouped.setdefault(key, []).append(resource)
    return grouped


def assemble_ingresses(
    resources: ClusterResources,
    ingresses: Iterable[Any],
    cluster_name: str,
    recorder: EventRecorder | None = None,
) -> tuple[IngressBinding, ...]:
    """Rebuild ingress-to-resource bindings from a tagging inventory.

    Only ingresses present in the store are bound; load balancers tagged for
    an ingress that no longer exists are reported and left for the ingress
    reconciler to clean up.  Problems with a single ingress are also
    recorded as Kubernetes Events on it when a *recorder* is given.
    """
    load_balancers = _group_by_ingress(resources.load_balancers)
    target_groups = _group_by_ingress(resources.target_groups)
    listeners = _group_by_ingress(resources.listeners)
    rules = _group_by_ingress(resources.listener_rules)

    bindings: list[IngressBinding] = []
    seen: set[str] = set()
    for ingress in ingresses:
        key = object_key(ingress)
        seen.add(key)
        candidates = load_balancers.get(key, [])
        if len(candidates) > 1:
            LOGGER.warning(
                "Ingress %s owns %d load balancers in cluster %s; using %s",
                key,
                len(candidates),
                cluster_name,
                candidates[0].arn,
            )
            if recorder is not None:
                recorder.event(
                    ingress,
                    EVENT_TYPE_WARNING,
                    "DuplicateLoadBalancers",
                    f"{len(candidates)} load balancers are tagged for this ingress; "
                    f"using {candidates[0].arn}",
                )
        bindings.append(
            IngressBinding(
                key=key,
                ingress=ingress,
                load_balancer=candidates[0] if candidates else None,
                target_groups=tuple(target_groups.get(key, ())),
                listeners=tuple(listeners.get(key, ())),
                listener_rules=tuple(rules.get(key, ())),
            )
        )

    orphaned = sorted(set(load_balancers) - seen)
    if orphaned:
        LOGGER.info(
            "Found %d load balancer(s) without a matching ingress: %s",
            len(orphaned),
            ", ".join(orphaned),
        )
    return tuple(bindings)
