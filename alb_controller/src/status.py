from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import CoordinationV1Api, NetworkingV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from alb_controller.src.kube import patch_ingress_status
from alb_controller.src.metrics import METRICS
from alb_controller.src.provider import IngressBinding, RunningConfiguration


def default_identity() -> str:
    """Return this replica's election identity, defaulting to the pod name."""
    return os.getenv("POD_NAME", os.getenv("HOSTNAME", "unknown"))


def published_hostnames(ingress: Any) -> list[str]:
    """Return the hostnames currently published in an Ingress status."""
    status = getattr(ingress, "status", None)
    load_balancer = getattr(status, "load_balancer", None)
    entries = getattr(load_balancer, "ingress", None) or []
    hostnames = []
    for entry in entries:
        hostname = getattr(entry, "hostname", None)
        if hostname:
            hostnames.append(hostname)
    return hostnames


class StatusSyncer:
    """Publishes load balancer DNS names into ``status.loadBalancer`` of managed Ingresses.

    Replicas elect a single writer through the ``coordination.k8s.io/v1``
    Lease named ``election_id``.  The Lease is acquired when missing, held
    while renewed by its holder and taken over once ``renewTime +
    leaseDurationSeconds`` has passed.  While leader, every ``interval``
    seconds the syncer compares each binding in the running configuration
    with the Ingress' published addresses and patches the ones that differ.
    """

    def __init__(
        self,
        networking_api: NetworkingV1Api,
        coordination_api: CoordinationV1Api,
        namespace: str,
        election_id: str,
        running_config_fn: Callable[[], RunningConfiguration],
        ingress_fn: Callable[[str], Any] | None = None,
        identity: str | None = None,
        interval: float = 60.0,
        lease_duration_seconds: int = 30,
        retry_period_seconds: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if retry_period_seconds >= lease_duration_seconds:
            raise ValueError("retry_period_seconds must be smaller than lease_duration_seconds")
        self.networking_api = networking_api
        self.coordination_api = coordination_api
        self.namespace = namespace
        self.election_id = election_id
        self.running_config_fn = running_config_fn
        self.ingress_fn = ingress_fn
        self.identity = identity or default_identity()
        self.interval = interval
        self.lease_duration_seconds = lease_duration_seconds
        self.retry_period_seconds = retry_period_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._stop = threading.Event()
        self._is_leader = False
        self._last_status_sync: float | None = None
        # key -> (hostnames, resourceVersion of the Ingress they were patched onto)
        self._patched: dict[str, tuple[list[str], str | None]] = {}

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    # ------------------------------------------------------------------
    # Election
    # ------------------------------------------------------------------

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _try_acquire_or_renew(self) -> bool:
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.election_id, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status != 404:
                self.logger.warning("Failed to read lease %s: %s", self.election_id, exc.reason)
                return False
            lease = V1Lease(
                metadata=V1ObjectMeta(name=self.election_id, namespace=self.namespace),
                spec=V1LeaseSpec(
                    holder_identity=self.identity,
                    lease_duration_seconds=self.lease_duration_seconds,
                    acquire_time=now,
                    renew_time=now,
                ),
            )
            try:
                self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
                return True
            except ApiException as create_exc:
                self.logger.debug("Could not create lease %s: %s", self.election_id, create_exc.reason)
                return False

        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity and spec.holder_identity != self.identity and spec.renew_time:
            renew_time = spec.renew_time
            if renew_time.tzinfo is None:
                renew_time = renew_time.replace(tzinfo=UTC)
            duration = spec.lease_duration_seconds or self.lease_duration_seconds
            if (now - renew_time).total_seconds() < duration:
                return False

        if spec.holder_identity != self.identity:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        lease.spec = spec
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.election_id, namespace=self.namespace, body=lease
            )
            return True
        except ApiException as exc:
            self.logger.debug("Could not update lease %s: %s", self.election_id, exc.reason)
            return False

    def _release_lease(self) -> None:
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.election_id, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.election_id, namespace=self.namespace, body=lease
                )
                self.logger.info("Released status lease %s", self.election_id)
        except ApiException:
            self.logger.warning("Failed to release status lease %s", self.election_id, exc_info=True)

    def _set_leader(self, leader: bool) -> None:
        if leader == self._is_leader:
            return
        self._is_leader = leader
        METRICS.leader_state.set(1 if leader else 0)
        if leader:
            self.logger.info("Acquired status lease %s (identity=%s)", self.election_id, self.identity)
            self._last_status_sync = None
            self._patched.clear()
        else:
            self.logger.warning("Lost status lease %s", self.election_id)

    # ------------------------------------------------------------------
    # Status updates
    # ------------------------------------------------------------------

    def _current_ingress(self, binding: IngressBinding) -> Any:
        if self.ingress_fn is not None:
            current = self.ingress_fn(binding.key)
            if current is not None:
                return current
        return binding.ingress

    def _sync_binding(self, binding: IngressBinding) -> bool:
        desired = [binding.hostname] if binding.hostname else []
        ingress = self._current_ingress(binding)
        if published_hostnames(ingress) == desired:
            self._patched.pop(binding.key, None)
            return False

        metadata = getattr(ingress, "metadata", None)
        observed_version = getattr(metadata, "resource_version", None)
        if self._patched.get(binding.key) == (desired, observed_version):
            # Already written; the cached object predates our patch.
            return False

        namespace = getattr(metadata, "namespace", None) or "default"
        name = getattr(metadata, "name", None)
        try:
            patch_ingress_status(
                networking_api=self.networking_api,
                namespace=namespace,
                name=name,
                hostnames=desired,
            )
        except ApiException:
            METRICS.status_updates_total.labels(result="error").inc()
            self.logger.exception("Failed to update status of ingress %s", binding.key)
            return False

        self._patched[binding.key] = (desired, observed_version)
        METRICS.status_updates_total.labels(result="success").inc()
        self.logger.info("Updated status of ingress %s to %s", binding.key, desired or "<none>")
        return True

    def sync_statuses(self) -> int:
        """Patch every Ingress whose published address is stale.  Returns the patch count.

        Published addresses are read from the object store when available,
        falling back to the Ingress captured in the running configuration.
        """
        running_config = self.running_config_fn()
        keys = {binding.key for binding in running_config.ingresses}
        for key in [key for key in self._patched if key not in keys]:
            del self._patched[key]
        return sum(1 for binding in running_config.ingresses if self._sync_binding(binding))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Block until :meth:`shutdown`, keeping the lease and statuses current."""
        self.logger.info(
            "Starting status syncer (lease=%s/%s, identity=%s)",
            self.namespace,
            self.election_id,
            self.identity,
        )
        while not self._stop.is_set():
            try:
                self._set_leader(self._try_acquire_or_renew())
            except Exception:
                self.logger.exception("Unexpected error in status election cycle")
                self._set_leader(False)

            now = time.monotonic()
            if self._is_leader and (
                self._last_status_sync is None or now - self._last_status_sync >= self.interval
            ):
                try:
                    self.sync_statuses()
                except Exception:
                    self.logger.exception("Unexpected error syncing ingress statuses")
                self._last_status_sync = now

            self._stop.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._set_leader(False)
        self.logger.info("Status syncer stopped")

    def shutdown(self) -> None:
        self._stop.set()
