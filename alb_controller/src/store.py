from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, NetworkingV1Api

from alb_controller.src.events import (
    WATCH_EVENT_TYPES,
    ConfigurationEvent,
    EventType,
    ObjectEvent,
)
from alb_controller.src.metrics import METRICS
from alb_controller.src.ring import RingChannel
from alb_controller.src.taskqueue import object_key

INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"
DEFAULT_INGRESS_CLASS = "alb"


def _resource_version(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


class IngressStore:
    """Local cache of managed Ingresses fed by list-then-watch loops.

    Two daemon threads run while the store is active: one watching Ingresses
    (all namespaces, or ``namespace`` when set) and one watching the
    controller ConfigMap.  Every observed change is pushed onto the
    ``update_channel`` as an :class:`ObjectEvent` or
    :class:`ConfigurationEvent`; the channel coalesces bursts so the watch
    threads never block on a slow consumer.

    Watch loop behaviour per resource:

    1. Initial list with exponential backoff and jitter (cap 30 s).
    2. Watch from the list's ``resourceVersion``; the server closes the
       stream after ``resync_period`` seconds and the loop reconnects.
    3. ``410 Gone`` re-lists and emits UPDATE/DELETE events for whatever
       drifted while the watch was disconnected.
    4. ``401`` / ``403`` stop that watch with an error log (RBAC problem).
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        networking_api: NetworkingV1Api,
        update_channel: RingChannel,
        namespace: str = "",
        config_map_name: str = "alb-ingress-controller",
        ingress_class: str = DEFAULT_INGRESS_CLASS,
        resync_period: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.networking_api = networking_api
        self.update_channel = update_channel
        self.namespace = namespace
        self.ingress_class = ingress_class
        self.resync_period = resync_period
        self.logger = logger or logging.getLogger(__name__)

        cm_namespace, _, cm_name = config_map_name.rpartition("/")
        self.config_map_namespace = cm_namespace or namespace or "default"
        self.config_map_name = cm_name

        self._cache_lock = threading.Lock()
        self._ingresses: dict[str, Any] = {}
        self._config_map: Any = None

        self.ingresses_synced = threading.Event()
        self.config_map_synced = threading.Event()
        self._external_stop = threading.Event()
        self._watchers: dict[str, watch.Watch] = {}
        self._watcher_lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    # ------------------------------------------------------------------
    # Cache accessors
    # ------------------------------------------------------------------

    def list_ingresses(self) -> list[Any]:
        """Return a snapshot of managed Ingresses ordered by ``namespace/name``."""
        with self._cache_lock:
            return [self._ingresses[key] for key in sorted(self._ingresses)]

    def get_ingress(self, key: str) -> Any:
        with self._cache_lock:
            return self._ingresses.get(key)

    def get_config_map(self) -> Any:
        with self._cache_lock:
            return self._config_map

    def has_synced(self) -> bool:
        return self.ingresses_synced.is_set() and self.config_map_synced.is_set()

    def is_managed(self, ingress: Any) -> bool:
        """Return True if *ingress* belongs to this controller's ingress class.

        The legacy annotation wins over ``spec.ingressClassName``; an ingress
        with neither is only claimed when running as the default class.
        """
        metadata = getattr(ingress, "metadata", None)
        annotations = getattr(metadata, "annotations", None) or {}
        ingress_class = annotations.get(INGRESS_CLASS_ANNOTATION)
        if not ingress_class:
            spec = getattr(ingress, "spec", None)
            ingress_class = getattr(spec, "ingress_class_name", None)
        if not ingress_class:
            return self.ingress_class == DEFAULT_INGRESS_CLASS
        return ingress_class == self.ingress_class

    # ------------------------------------------------------------------
    # Event translation
    # ------------------------------------------------------------------

    def _emit(self, event: ObjectEvent | ConfigurationEvent) -> None:
        self.update_channel.put(event)

    def handle_ingress_event(self, event_type: str, ingress: Any) -> ObjectEvent | None:
        """Apply one Ingress watch event to the cache and emit the store event.

        An Ingress that switches to another class is treated as deleted.
        Returns the emitted event, or None when the change is irrelevant.
        """
        store_type = WATCH_EVENT_TYPES.get(event_type)
        if store_type is None:
            return None
        try:
            key = object_key(ingress)
        except ValueError:
            self.logger.warning("Skipping Ingress %s event without metadata.name", event_type)
            return None

        with self._cache_lock:
            known = key in self._ingresses
            if store_type is EventType.DELETE or not self.is_managed(ingress):
                if not known:
                    return None
                del self._ingresses[key]
                event = ObjectEvent(type=EventType.DELETE, obj=ingress)
            else:
                self._ingresses[key] = ingress
                event = ObjectEvent(
                    type=EventType.UPDATE if known else EventType.ADD,
                    obj=ingress,
                )

        self.logger.debug("Ingress %s %s", key, event.type.value)
        self._emit(event)
        return event

    def handle_config_map_event(self, event_type: str, config_map: Any) -> ConfigurationEvent | None:
        if event_type not in WATCH_EVENT_TYPES:
            return None
        name = getattr(getattr(config_map, "metadata", None), "name", None)
        if name != self.config_map_name:
            return None

        with self._cache_lock:
            previous = self._config_map
            if event_type == "DELETED":
                self._config_map = None
            else:
                if (
                    previous is not None
                    and _resource_version(previous) is not None
                    and _resource_version(previous) == _resource_version(config_map)
                ):
                    return None
                self._config_map = config_map

        self.logger.info(
            "ConfigMap %s/%s %s",
            self.config_map_namespace,
            self.config_map_name,
            event_type.lower(),
        )
        event = ConfigurationEvent(obj=config_map)
        self._emit(event)
        return event

    def _sync_ingresses_from_list(self, listing: Any) -> None:
        """Replace the Ingress cache from a full listing, emitting the drift.

        New or changed Ingresses produce ADD/UPDATE events, Ingresses missing
        from the listing produce DELETE events.
        """
        items = getattr(listing, "items", None) or []
        listed: set[str] = set()
        for ingress in items:
            try:
                key = object_key(ingress)
            except ValueError:
                continue
            listed.add(key)
            cached = self.get_ingress(key)
            if (
                cached is not None
                and _resource_version(cached) is not None
                and _resource_version(cached) == _resource_version(ingress)
            ):
                continue
            self.handle_ingress_event("MODIFIED" if cached is not None else "ADDED", ingress)

        with self._cache_lock:
            vanished = [self._ingresses[key] for key in self._ingresses if key not in listed]
        for ingress in vanished:
            self.handle_ingress_event("DELETED", ingress)

    def _sync_config_map_from_list(self, listing: Any) -> None:
        items = getattr(listing, "items", None) or []
        matching = [
            item
            for item in items
            if getattr(getattr(item, "metadata", None), "name", None) == self.config_map_name
        ]
        if matching:
            self.handle_config_map_event("MODIFIED", matching[0])
        elif self.get_config_map() is not None:
            self.handle_config_map_event("DELETED", self.get_config_map())

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    # The watch helper derives the object type from the API method's
    # docstring, so the generated client methods are handed over unwrapped.

    def _ingress_list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        if self.namespace:
            return self.networking_api.list_namespaced_ingress, {"namespace": self.namespace}
        return self.networking_api.list_ingress_for_all_namespaces, {}

    def _config_map_list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        return self.core_api.list_namespaced_config_map, {
            "namespace": self.config_map_namespace,
            "field_selector": f"metadata.name={self.config_map_name}",
        }

    # ------------------------------------------------------------------
    # Watch loops
    # ------------------------------------------------------------------

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _initial_list(
        self,
        resource: str,
        list_call: Callable[[], tuple[Callable[..., Any], dict[str, Any]]],
        apply_list: Callable[[Any], None],
        stop_event: threading.Event,
    ) -> tuple[bool, str | None]:
        """List *resource* until it succeeds.  Returns ``(ok, resource_version)``."""
        backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                func, kwargs = list_call()
                listing = func(**kwargs)
                apply_list(listing)
                return True, _resource_version(listing)
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        resource,
                        exc.status,
                    )
                    return False, None
                self.logger.exception("Initial %s list failed", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False, None

    def _watch_loop(
        self,
        resource: str,
        list_call: Callable[[], tuple[Callable[..., Any], dict[str, Any]]],
        apply_list: Callable[[Any], None],
        apply_event: Callable[[str, Any], Any],
        synced: threading.Event,
        stop_event: threading.Event,
        on_synced: Callable[[], None] | None = None,
    ) -> None:
        ok, resource_version = self._initial_list(resource, list_call, apply_list, stop_event)
        if not ok:
            return
        synced.set()
        if on_synced is not None:
            try:
                on_synced()
            except Exception:
                self.logger.exception("Synced callback for %s failed", resource)
        self.logger.info("Watching %s from resourceVersion %s", resource, resource_version)

        backoff_seconds = 1
        while not self._should_stop(stop_event):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._watchers[resource] = watcher
            try:
                func, kwargs = list_call()
                stream = watcher.stream(
                    func,
                    resource_version=resource_version,
                    timeout_seconds=self.resync_period,
                    **kwargs,
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    if _resource_version(obj):
                        resource_version = _resource_version(obj)
                    apply_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away; re-list
                # and resume from the fresh snapshot.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", resource)
                    try:
                        func, kwargs = list_call()
                        listing = func(**kwargs)
                        apply_list(listing)
                        resource_version = _resource_version(listing)
                    except ApiException:
                        self.logger.exception("Failed to re-list %s after 410", resource)
                        METRICS.watch_errors_total.labels(resource=resource).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch of %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        resource,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=resource).inc()
                    return

                self.logger.exception("Kubernetes API watch error on %s", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._watchers.get(resource) is watcher:
                        del self._watchers[resource]

    def run(
        self,
        stop_event: threading.Event,
        on_synced: Callable[[], None] | None = None,
    ) -> None:
        """Start the Ingress and ConfigMap watch threads and return immediately.

        *on_synced* is called once from the Ingress watch thread after the
        initial Ingress list has been applied to the cache.
        """
        self._external_stop.clear()
        loops = (
            (
                "ingresses",
                self._ingress_list_call,
                self._sync_ingresses_from_list,
                self.handle_ingress_event,
                self.ingresses_synced,
                on_synced,
            ),
            (
                "configmap",
                self._config_map_list_call,
                self._sync_config_map_from_list,
                self.handle_config_map_event,
                self.config_map_synced,
                None,
            ),
        )
        for resource, list_call, apply_list, apply_event, synced, callback in loops:
            thread = threading.Thread(
                target=self._watch_loop,
                args=(resource, list_call, apply_list, apply_event, synced, stop_event, callback),
                name=f"store-{resource}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            watchers = list(self._watchers.values())
        for watcher in watchers:
            watcher.stop()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)
