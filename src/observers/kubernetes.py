# SpotAffinity/src/observers/kubernetes.py
# @ai-rules:
# 1. [Constraint]: One daemon thread per resource kind runs the blocking list/watch; one asyncio consumer per kind applies events in order.
# 2. [Pattern]: The thread never touches the cache. It hands items to the loop via call_soon_threadsafe.
# 3. [Gotcha]: A kind is "synced" only after its listing has been applied to the cache, not when the list call returns.
# 4. [Pattern]: 410 Gone -> relist. Relist synthesizes deletes for objects that disappeared while disconnected.
"""
Kubernetes Watch Ingestor.

Keeps the ReplicaAffinityCache in step with the cluster by watching pods and
ReplicaSets. Admission requests must not be served before both initial
listings are applied: until then every pod would look like the first of its
group and be sent to on-demand.
"""
from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from ..models import (
    DEPLOYMENT_API_VERSION,
    DEPLOYMENT_KIND,
    KubeObject,
    ObjectMeta,
    controlling_owner,
    observed_node_pool,
    replicaset_owner,
)
from ..state.affinity_cache import ReplicaAffinityCache
from ..utils.kube import load_kube_config
from .events import (
    PODS,
    REPLICASETS,
    PodAdded,
    PodDeleted,
    PodUpdated,
    ReplicaSetAdded,
    ReplicaSetDeleted,
    ReplicaSetUpdated,
    WatchEvent,
    from_watch,
)

logger = logging.getLogger(__name__)

# Environment variable configuration
WATCH_NAMESPACE = os.getenv("WATCH_NAMESPACE", "")  # empty = all namespaces
WATCH_TIMEOUT_SECONDS = int(os.getenv("WATCH_TIMEOUT_SECONDS", "300"))
WATCH_MAX_BACKOFF_SECONDS = float(os.getenv("WATCH_MAX_BACKOFF_SECONDS", "30"))

HTTP_GONE = 410


@dataclass(frozen=True)
class _Listing:
    """Full listing of one kind, applied as a reconcile."""

    kind: str
    objects: list[dict[str, Any]]


class WatchIngestor:
    """
    Watches pods and ReplicaSets and mirrors them into the cache.

    Usage:
        ingestor = WatchIngestor(cache)
        await ingestor.start()
        await ingestor.wait_ready(timeout=30)
        await ingestor.stop()
    """

    def __init__(
        self,
        cache: ReplicaAffinityCache,
        core_api: Optional[client.CoreV1Api] = None,
        apps_api: Optional[client.AppsV1Api] = None,
        namespace: str = WATCH_NAMESPACE,
        watch_timeout: int = WATCH_TIMEOUT_SECONDS,
    ):
        self.cache = cache
        self.namespace = namespace
        self.watch_timeout = watch_timeout
        self._core_api = core_api
        self._apps_api = apps_api
        self._api_client: Optional[client.ApiClient] = None

        self._running = False
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._consumers: list[asyncio.Task] = []
        self._watches: dict[str, watch.Watch] = {}
        self._synced: dict[str, asyncio.Event] = {PODS: asyncio.Event(), REPLICASETS: asyncio.Event()}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> bool:
        """Start both subscriptions. Returns False when no cluster config is available."""
        if self._running:
            logger.warning("WatchIngestor already running")
            return True

        if self._core_api is None or self._apps_api is None:
            if not load_kube_config():
                logger.error("WatchIngestor disabled: K8s client not available; webhook will stay unready")
                return False
            self._core_api = self._core_api or client.CoreV1Api()
            self._apps_api = self._apps_api or client.AppsV1Api()

        loop = asyncio.get_running_loop()
        self._running = True
        self._stop.clear()
        for kind in (REPLICASETS, PODS):
            queue: asyncio.Queue = asyncio.Queue()
            self._consumers.append(asyncio.create_task(self._consume(kind, queue)))
            thread = threading.Thread(
                target=self._pump,
                args=(kind, loop, queue),
                name=f"watch-{kind}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

        logger.info(f"WatchIngestor started: namespace={self.namespace or '<all>'}, watch_timeout={self.watch_timeout}s")
        return True

    async def stop(self) -> None:
        """Stop the watches. Daemon threads exit at their next event or watch timeout."""
        if not self._running:
            return
        self._running = False
        self._stop.set()
        for w in list(self._watches.values()):
            w.stop()
        for task in self._consumers:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._consumers.clear()
        self._threads.clear()
        logger.info("WatchIngestor stopped")

    # =========================================================================
    # Readiness gate
    # =========================================================================

    def is_ready(self) -> bool:
        return all(event.is_set() for event in self._synced.values())

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until both initial listings are applied, or *timeout* elapses."""
        if self.is_ready():
            return True
        try:
            await asyncio.wait_for(
                asyncio.gather(*(event.wait() for event in self._synced.values())),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            pass
        return self.is_ready()

    # =========================================================================
    # Event application (event loop side)
    # =========================================================================

    async def apply(self, event: WatchEvent) -> None:
        """Apply one typed event to the cache."""
        match event:
            case PodAdded(obj) | PodUpdated(obj):
                await self._upsert_pod(obj)
            case PodDeleted(obj):
                if obj.metadata.uid:
                    await self.cache.remove_pod(obj.metadata.uid)
            case ReplicaSetAdded(obj) | ReplicaSetUpdated(obj):
                await self._upsert_replicaset(obj)
            case ReplicaSetDeleted(obj):
                if obj.metadata.uid:
                    await self.cache.forget_group(obj.metadata.uid)
            case _:
                raise TypeError(f"Unhandled watch event {type(event).__name__}")

    async def _upsert_pod(self, pod: KubeObject) -> None:
        pod_id = pod.metadata.uid
        if not pod_id:
            return
        owner = replicaset_owner(pod)
        if owner is None:
            # Never tracked, or orphaned by a ReplicaSet deleted with propagationPolicy=Orphan
            await self.cache.remove_pod(pod_id)
            return
        await self.cache.upsert_pod(pod_id, owner.uid, observed_node_pool(pod.spec))

    async def _upsert_replicaset(self, replicaset: KubeObject) -> None:
        group_id = replicaset.metadata.uid
        if not group_id:
            return
        owner = controlling_owner(replicaset.metadata.owner_references)
        if owner is None or not owner.is_kind(DEPLOYMENT_API_VERSION, DEPLOYMENT_KIND):
            await self.cache.mark_ineligible(group_id)
        else:
            await self.cache.mark_eligible(group_id)

    async def reconcile(self, listing: _Listing) -> None:
        """Apply a full listing: drop what disappeared, then upsert everything present."""
        present = {
            (obj.get("metadata") or {}).get("uid")
            for obj in listing.objects
        }
        if listing.kind == PODS:
            for pod_id in self.cache.tracked_pod_ids() - present:
                await self.apply(PodDeleted(KubeObject(metadata=ObjectMeta(uid=pod_id))))
        else:
            for group_id in self.cache.ineligible_group_ids() - present:
                await self.apply(ReplicaSetDeleted(KubeObject(metadata=ObjectMeta(uid=group_id))))

        for obj in listing.objects:
            event = from_watch(listing.kind, "ADDED", obj)
            if event is not None:
                await self.apply(event)

        if not self._synced[listing.kind].is_set():
            self._synced[listing.kind].set()
            logger.info(f"Initial {listing.kind} listing applied ({len(listing.objects)} objects)")
        else:
            logger.info(f"Relisted {listing.kind} ({len(listing.objects)} objects)")

    async def _consume(self, kind: str, queue: asyncio.Queue) -> None:
        """Apply items for one kind strictly in arrival order."""
        while True:
            item = await queue.get()
            try:
                if isinstance(item, _Listing):
                    await self.reconcile(item)
                else:
                    await self.apply(item)
            except Exception as e:
                logger.exception(f"Failed to apply {kind} item {type(item).__name__}: {e}")

    # =========================================================================
    # List/watch (thread side, blocking)
    # =========================================================================

    def _list_fn(self, kind: str) -> tuple[Callable[..., Any], dict[str, Any]]:
        if kind == PODS:
            if self.namespace:
                return self._core_api.list_namespaced_pod, {"namespace": self.namespace}
            return self._core_api.list_pod_for_all_namespaces, {}
        if self.namespace:
            return self._apps_api.list_namespaced_replica_set, {"namespace": self.namespace}
        return self._apps_api.list_replica_set_for_all_namespaces, {}

    def _serialize(self, obj: Any) -> dict[str, Any]:
        """Typed client model -> camelCase dict, the same shape admission payloads use."""
        if isinstance(obj, dict):
            return obj
        if self._api_client is None:
            self._api_client = client.ApiClient()
        return self._api_client.sanitize_for_serialization(obj)

    def _list(self, kind: str, emit: Callable[[Any], None]) -> str:
        list_fn, kwargs = self._list_fn(kind)
        response = list_fn(**kwargs)
        emit(_Listing(kind=kind, objects=[self._serialize(item) for item in response.items]))
        return response.metadata.resource_version

    def _watch(self, kind: str, resource_version: str, emit: Callable[[Any], None]) -> str:
        """Stream until the server closes the watch. Returns the last resourceVersion seen."""
        list_fn, kwargs = self._list_fn(kind)
        w = watch.Watch()
        self._watches[kind] = w
        try:
            for raw in w.stream(
                list_fn,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout,
                **kwargs,
            ):
                if self._stop.is_set():
                    break
                event_type = raw.get("type", "")
                raw_object = raw.get("raw_object") or self._serialize(raw.get("object"))
                if event_type == "ERROR":
                    raise ApiException(status=raw_object.get("code"), reason=raw_object.get("message"))
                event = from_watch(kind, event_type, raw_object)
                if event is not None:
                    emit(event)
            return w.resource_version or resource_version
        finally:
            w.stop()
            self._watches.pop(kind, None)

    def _pump(self, kind: str, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
        """Thread body: list, then watch; relist on 410 and after errors with backoff."""

        def emit(item: Any) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, item)

        backoff = 1.0
        resource_version: Optional[str] = None
        while not self._stop.is_set():
            try:
                if resource_version is None:
                    resource_version = self._list(kind, emit)
                resource_version = self._watch(kind, resource_version, emit)
                backoff = 1.0
            except ApiException as e:
                resource_version = None
                if e.status == HTTP_GONE:
                    logger.info(f"{kind} watch expired (410 Gone); relisting")
                    continue
                logger.warning(f"{kind} watch error: {e.status} {e.reason}; retrying in {backoff:.0f}s")
                self._stop.wait(backoff)
                backoff = min(backoff * 2, WATCH_MAX_BACKOFF_SECONDS)
            except Exception as e:
                if loop.is_closed():
                    logger.debug(f"{kind} watch thread exiting: event loop closed")
                    return
                resource_version = None
                logger.warning(f"Unexpected {kind} watch error: {e}; retrying in {backoff:.0f}s", exc_info=True)
                self._stop.wait(backoff)
                backoff = min(backoff * 2, WATCH_MAX_BACKOFF_SECONDS)
