from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from alb_controller.src.config import Configuration
from alb_controller.src.errors import ChannelClosed, ProviderSyncError, ShutdownInProgressError
from alb_controller.src.events import ConfigurationEvent, ObjectEvent
from alb_controller.src.kube import EventRecorder, KubeClients
from alb_controller.src.metrics import METRICS
from alb_controller.src.provider import RunningConfiguration, assemble_ingresses
from alb_controller.src.ratelimit import TokenBucketRateLimiter
from alb_controller.src.ring import RingChannel
from alb_controller.src.status import StatusSyncer
from alb_controller.src.store import IngressStore
from alb_controller.src.taskqueue import DummyObject, TaskQueue, get_dummy_object, object_key

INGRESS_QUEUE = "ingress-sync"
PROVIDER_QUEUE = "provider-sync"

INITIAL_SYNC_KEY = "initial-sync"
CONFIGMAP_CHANGE_KEY = "configmap-change"
PERIODIC_SYNC_KEY = "periodic-sync"
STORE_SYNCED_KEY = "store-synced"

# Longest the select loop blocks on the channel before re-checking the stop event.
_SELECT_POLL_SECONDS = 1.0

IngressReconciler = Callable[[list[Any], RunningConfiguration], None]


class ControllerState(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    STOPPED = "stopped"


def log_ingress_reconciler(ingresses: list[Any], running_config: RunningConfiguration) -> None:
    """Default reconciler: reports what would be reconciled and changes nothing."""
    bound = sum(1 for binding in running_config.ingresses if binding.load_balancer is not None)
    logging.getLogger(__name__).info(
        "Reconciling %d ingress(es); %d bound to a load balancer",
        len(ingresses),
        bound,
    )


def _describe(item: Any) -> str:
    if item is None:
        return "<none>"
    try:
        return object_key(item)
    except ValueError:
        return type(item).__name__


class ALBController:
    """Event-driven control loop keeping load balancers in step with Ingress objects.

    Lifecycle: ``CREATED → STARTING → RUNNING → SHUTTING_DOWN → STOPPED``.

    ``start()`` runs one blocking provider sync (fatal on failure), starts
    the object-store watches, the status syncer and both queue workers,
    queues an ``initial-sync`` pass and then runs the select loop in the
    caller's thread until ``stop()`` is called.  When the store finishes its
    first Ingress listing a ``store-synced`` provider sync rebuilds the
    bindings and queues one more ingress sync.

    Work is split over two queues drained by independent workers:

    ``sync_queue``
        ``sync_ingress`` for Ingress changes, ConfigMap changes and the
        initial pass.  Rate limited by a token bucket.
    ``provider_sync_queue``
        ``provider_sync`` re-derives the running configuration from the
        resource-tagging service every ``provider_sync_interval`` seconds.

    ``running_config`` is replaced only by ``provider_sync`` and only while
    ``mutex`` is held, so two sync passes never interleave.  A separate stop
    lock keeps ``stop()`` single-shot.
    """

    def __init__(
        self,
        config: Configuration,
        tagging_client: Any,
        store: IngressStore,
        update_channel: RingChannel,
        ingress_reconciler: IngressReconciler | None = None,
        status_syncer: StatusSyncer | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
        recorder: EventRecorder | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cfg = config
        self.tagging_client = tagging_client
        self.store = store
        self.update_channel = update_channel
        self.ingress_reconciler = ingress_reconciler or log_ingress_reconciler
        self.status_syncer = status_syncer
        self.recorder = recorder
        self.sync_rate_limiter = rate_limiter or TokenBucketRateLimiter(config.sync_rate_limit, 1)
        self.logger = logger or logging.getLogger(__name__)

        self.mutex = threading.Lock()
        self.running_config = RunningConfiguration()

        self.stop_event = threading.Event()
        self.ready = threading.Event()
        self.is_shutting_down = False
        self._stop_lock = threading.Lock()
        self._stop_requested = False
        self._threads: list[threading.Thread] = []
        self.state = ControllerState.CREATED

        self.sync_queue = TaskQueue(
            self.sync_ingress,
            INGRESS_QUEUE,
            max_retries=config.max_retries,
        )
        self.provider_sync_queue = TaskQueue(
            self.provider_sync,
            PROVIDER_QUEUE,
            max_retries=config.max_retries,
            resync_key=PERIODIC_SYNC_KEY,
        )

    def _set_state(self, state: ControllerState) -> None:
        self.logger.debug("Controller state %s -> %s", self.state.value, state.value)
        self.state = state

    def _spawn(self, name: str, target: Callable[..., None], *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)
        return thread

    def get_running_config(self) -> RunningConfiguration:
        """Return the current running configuration.

        The value is immutable and swapped in by a single assignment, so
        readers never observe a half-written snapshot.
        """
        return self.running_config

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def provider_sync(self, item: Any) -> None:
        """Rebuild ``running_config`` from the resource-tagging inventory.

        Holds ``mutex`` for the whole pass.  If the inventory query or the
        ingress assembly fails the previous configuration is kept and
        :class:`ProviderSyncError` is raised.
        """
        with self.mutex:
            self.logger.debug("Synchronizing AWS resources (trigger=%s)", _describe(item))
            try:
                resources = self.tagging_client.get_cluster_resources(self.cfg.cluster_name)
            except Exception as exc:
                METRICS.provider_sync_total.labels(result="error").inc()
                raise ProviderSyncError(
                    f"failed to retrieve resources for cluster {self.cfg.cluster_name}: {exc}"
                ) from exc

            self.logger.debug(
                "Retrieved tag information on %d load balancers, %d target groups, "
                "%d listeners, %d rules, and %d subnets",
                len(resources.load_balancers),
                len(resources.target_groups),
                len(resources.listeners),
                len(resources.listener_rules),
                len(resources.subnets),
            )

            try:
                bindings = assemble_ingresses(
                    resources,
                    self.store.list_ingresses(),
                    self.cfg.cluster_name,
                    recorder=self.recorder,
                )
            except Exception as exc:
                METRICS.provider_sync_total.labels(result="error").inc()
                raise ProviderSyncError(
                    f"failed to assemble ingresses for cluster {self.cfg.cluster_name}: {exc}"
                ) from exc

            self.running_config = RunningConfiguration(
                ingresses=bindings,
                resources=resources,
                synced_at=datetime.now(UTC),
            )
            METRICS.provider_sync_total.labels(result="success").inc()
            METRICS.running_ingresses.set(len(bindings))

        # Reconcile right away against the first configuration that can bind
        # the store's ingresses.
        if isinstance(item, DummyObject) and item.key == STORE_SYNCED_KEY:
            self.sync_queue.enqueue_task(get_dummy_object(STORE_SYNCED_KEY))

    def sync_ingress(self, item: Any) -> None:
        """Reconcile every managed Ingress against the running configuration."""
        if not self.sync_rate_limiter.accept(self.stop_event):
            self.logger.debug("Skipping ingress sync of %s: controller stopping", _describe(item))
            return

        with self.mutex:
            snapshot = self.running_config
        ingresses = self.store.list_ingresses()
        self.logger.debug(
            "Syncing %d ingress(es) (trigger=%s)", len(ingresses), _describe(item)
        )
        self.ingress_reconciler(ingresses, snapshot)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    def handle_event(self, event: Any) -> bool:
        """Route one coalesced store event onto the ingress queue.

        Configuration changes always take the unconditional path; Ingress
        changes take the skippable path so bursts for one object collapse.
        Returns True when work was queued.
        """
        if self.is_shutting_down:
            return False

        if isinstance(event, ConfigurationEvent):
            self.logger.debug("Configuration change received")
            return self.sync_queue.enqueue_task(get_dummy_object(CONFIGMAP_CHANGE_KEY))

        if isinstance(event, ObjectEvent):
            self.logger.debug("Event %s received - object %s", event.type.value, _describe(event.obj))
            try:
                return self.sync_queue.enqueue_skippable_task(event.obj)
            except ValueError:
                self.logger.warning("Dropping %s event for object without a name", event.type.value)
                return False

        self.logger.warning("Unexpected event type received %s", type(event).__name__)
        return False

    def _on_store_synced(self) -> None:
        """Rebuild the running configuration once the store holds its first Ingress listing.

        The startup provider sync runs before the store is listed, so it
        binds no ingresses.
        """
        self.logger.info("Ingress store synced; queueing provider sync")
        self.provider_sync_queue.enqueue_task(get_dummy_object(STORE_SYNCED_KEY))

    def _select_loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                event = self.update_channel.get(timeout=_SELECT_POLL_SECONDS)
            except ChannelClosed:
                break
            if event is None:
                continue
            self.handle_event(event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run the controller in the foreground until ``stop()`` is called.

        Raises :class:`ProviderSyncError` if the startup inventory cannot be
        retrieved; no worker has been started at that point.
        """
        self.logger.info("Starting AWS ALB Ingress controller")
        self._set_state(ControllerState.STARTING)

        try:
            self.provider_sync(get_dummy_object(INITIAL_SYNC_KEY))
        except ProviderSyncError:
            self._set_state(ControllerState.STOPPED)
            raise

        self.store.run(self.stop_event, on_synced=self._on_store_synced)
        if self.status_syncer is not None:
            self._spawn("status-syncer", self.status_syncer.run)
        self._spawn(
            INGRESS_QUEUE, self.sync_queue.run, self.cfg.ingress_sync_interval, self.stop_event
        )
        self._spawn(
            PROVIDER_QUEUE,
            self.provider_sync_queue.run,
            self.cfg.provider_sync_interval,
            self.stop_event,
        )

        # force initial sync
        self.sync_queue.enqueue_task(get_dummy_object(INITIAL_SYNC_KEY))

        if not self.stop_event.is_set():
            self._set_state(ControllerState.RUNNING)
            self.ready.set()

        self._select_loop()

        self.ready.clear()
        self._join_background()
        self._set_state(ControllerState.STOPPED)
        self.logger.info("Controller stopped")

    def stop(self) -> None:
        """Begin shutdown; raise :class:`ShutdownInProgressError` if one already started.

        Returns once teardown has been initiated.  Queue shutdowns run on
        their own threads; ``start()`` waits for the background loops.
        """
        self.is_shutting_down = True

        if not self._stop_lock.acquire(blocking=False):
            raise ShutdownInProgressError("shutdown already in progress")
        try:
            if self._stop_requested or self.sync_queue.is_shutting_down():
                raise ShutdownInProgressError("shutdown already in progress")
            self._stop_requested = True

            self.logger.info("Shutting down controller queues")
            self._set_state(ControllerState.SHUTTING_DOWN)
            self.ready.clear()
            self.stop_event.set()
            self.update_channel.close()
            self.store.request_stop()
            self._spawn(f"{INGRESS_QUEUE}-shutdown", self.sync_queue.shutdown)
            self._spawn(f"{PROVIDER_QUEUE}-shutdown", self.provider_sync_queue.shutdown)
            if self.status_syncer is not None:
                self.status_syncer.shutdown()
        finally:
            self._stop_lock.release()

    def _join_background(self) -> None:
        grace = self.cfg.shutdown_grace_seconds
        for thread in list(self._threads):
            thread.join(timeout=grace)
            if thread.is_alive():
                self.logger.warning(
                    "Background loop %s did not stop within %.1fs", thread.name, grace
                )
        self.store.join(timeout=grace)


def build_controller(
    config: Configuration,
    clients: KubeClients,
    tagging_client: Any,
    ingress_reconciler: IngressReconciler | None = None,
) -> ALBController:
    """Wire the coalescer, object store, status syncer and controller together."""
    update_channel = RingChannel()
    store = IngressStore(
        core_api=clients.core,
        networking_api=clients.networking,
        update_channel=update_channel,
        namespace=config.namespace,
        config_map_name=config.config_map_name,
        ingress_class=config.ingress_class,
        resync_period=config.resync_period,
    )
    controller = ALBController(
        config=config,
        tagging_client=tagging_client,
        store=store,
        update_channel=update_channel,
        ingress_reconciler=ingress_reconciler,
        recorder=EventRecorder(clients.core),
    )
    if config.status_sync_enabled:
        controller.status_syncer = StatusSyncer(
            networking_api=clients.networking,
            coordination_api=clients.coordination,
            namespace=store.config_map_namespace,
            election_id=config.election_id,
            running_config_fn=controller.get_running_config,
            ingress_fn=store.get_ingress,
            interval=config.status_sync_interval,
        )
    return controller
