# SpotAffinity/tests/test_watch_ingestor.py
# @ai-rules:
# 1. [Pattern]: CoreV1Api/AppsV1Api are MagicMocks passed to the constructor; watch.Watch is patched where used.
# 2. [Constraint]: Event application is tested through apply()/reconcile() directly -- no threads except in the lifecycle test.
"""Unit tests for WatchIngestor: event application, relist reconciliation, readiness, list/watch plumbing."""
from __future__ import annotations

import asyncio
import time
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException

from src.models import KubeObject, NodePool
from src.observers.events import (
    PODS,
    REPLICASETS,
    PodAdded,
    PodDeleted,
    PodUpdated,
    ReplicaSetAdded,
    ReplicaSetDeleted,
    ReplicaSetUpdated,
    from_watch,
)
from src.observers.kubernetes import WatchIngestor, _Listing
from src.state.affinity_cache import ReplicaAffinityCache


def _pod(uid: str, rs_uid: str = "rs-a", pool: str = "", owner_kind: str = "ReplicaSet") -> dict:
    spec: dict = {"containers": [{"name": "app", "image": "busybox"}]}
    if pool:
        spec["affinity"] = {"nodeAffinity": {"requiredDuringSchedulingIgnoredDuringExecution": {
            "nodeSelectorTerms": [{"matchExpressions": [
                {"key": "node.kubernetes.io/capacity", "operator": "In", "values": [pool]},
            ]}],
        }}}
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": f"web-{uid}",
            "namespace": "shop",
            "uid": uid,
            "ownerReferences": [{
                "apiVersion": "apps/v1" if owner_kind == "ReplicaSet" else "batch/v1",
                "kind": owner_kind,
                "name": "owner",
                "uid": rs_uid,
                "controller": True,
            }],
        },
        "spec": spec,
    }


def _replicaset(uid: str, owner_kind: str = "Deployment") -> dict:
    metadata: dict = {"name": f"rs-{uid}", "namespace": "shop", "uid": uid}
    if owner_kind:
        metadata["ownerReferences"] = [{
            "apiVersion": "apps/v1", "kind": owner_kind, "name": "web", "uid": f"owner-{uid}", "controller": True,
        }]
    return {"apiVersion": "apps/v1", "kind": "ReplicaSet", "metadata": metadata, "spec": {"replicas": 3}}


def _ingestor() -> tuple[WatchIngestor, ReplicaAffinityCache]:
    cache = ReplicaAffinityCache()
    return WatchIngestor(cache, core_api=MagicMock(), apps_api=MagicMock()), cache


class TestApply:
    @pytest.mark.asyncio
    async def test_pod_events_track_and_untrack(self):
        ingestor, cache = _ingestor()
        await ingestor.apply(PodAdded(KubeObject.model_validate(_pod("p1", pool="on-demand"))))
        await ingestor.apply(PodAdded(KubeObject.model_validate(_pod("p2"))))
        pools = {r.pod_id: r.pool for r in cache.members("rs-a")}
        assert pools == {"p1": NodePool.ON_DEMAND, "p2": NodePool.UNASSIGNED}

        await ingestor.apply(PodUpdated(KubeObject.model_validate(_pod("p2", pool="spot"))))
        assert {r.pod_id: r.pool for r in cache.members("rs-a")}["p2"] is NodePool.SPOT

        await ingestor.apply(PodDeleted(KubeObject.model_validate(_pod("p1"))))
        assert [r.pod_id for r in cache.members("rs-a")] == ["p2"]

    @pytest.mark.asyncio
    async def test_job_pod_not_tracked(self):
        ingestor, cache = _ingestor()
        await ingestor.apply(PodAdded(KubeObject.model_validate(_pod("p1", owner_kind="Job"))))
        assert cache.tracked_pod_ids() == set()

    @pytest.mark.asyncio
    async def test_orphaned_pod_dropped(self):
        ingestor, cache = _ingestor()
        await ingestor.apply(PodAdded(KubeObject.model_validate(_pod("p1", pool="on-demand"))))
        orphan = _pod("p1", pool="on-demand")
        orphan["metadata"]["ownerReferences"] = []
        await ingestor.apply(PodUpdated(KubeObject.model_validate(orphan)))
        assert cache.tracked_pod_ids() == set()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner_kind", ["", "Rollout"])
    async def test_replicaset_without_deployment_is_ineligible(self, owner_kind):
        ingestor, cache = _ingestor()
        await ingestor.apply(ReplicaSetAdded(KubeObject.model_validate(_replicaset("rs-a", owner_kind))))
        assert not cache.is_eligible("rs-a")

        await ingestor.apply(ReplicaSetDeleted(KubeObject.model_validate(_replicaset("rs-a", owner_kind))))
        assert cache.is_eligible("rs-a")

    @pytest.mark.asyncio
    async def test_replicaset_update_adopted_by_deployment(self):
        ingestor, cache = _ingestor()
        await ingestor.apply(ReplicaSetAdded(KubeObject.model_validate(_replicaset("rs-a", ""))))
        await ingestor.apply(ReplicaSetUpdated(KubeObject.model_validate(_replicaset("rs-a"))))
        assert cache.is_eligible("rs-a")

    @pytest.mark.asyncio
    async def test_deployment_replicaset_is_eligible(self):
        ingestor, cache = _ingestor()
        await ingestor.apply(ReplicaSetAdded(KubeObject.model_validate(_replicaset("rs-a"))))
        assert cache.is_eligible("rs-a")

    @pytest.mark.asyncio
    async def test_unknown_event_type_raises(self):
        ingestor, _ = _ingestor()
        with pytest.raises(TypeError):
            await ingestor.apply(object())


class TestReconcile:
    @pytest.mark.asyncio
    async def test_initial_listing_marks_synced(self):
        ingestor, cache = _ingestor()
        assert not ingestor.is_ready()

        await ingestor.reconcile(_Listing(kind=REPLICASETS, objects=[_replicaset("rs-x", "")]))
        assert not ingestor.is_ready()
        await ingestor.reconcile(_Listing(kind=PODS, objects=[_pod("p1", pool="on-demand")]))

        assert ingestor.is_ready()
        assert cache.tracked_pod_ids() == {"p1"}
        assert cache.ineligible_group_ids() == {"rs-x"}

    @pytest.mark.asyncio
    async def test_relist_drops_vanished_objects(self):
        ingestor, cache = _ingestor()
        await ingestor.reconcile(_Listing(kind=PODS, objects=[_pod("p1", pool="on-demand"), _pod("p2", pool="spot")]))
        await ingestor.reconcile(_Listing(kind=REPLICASETS, objects=[_replicaset("rs-x", "")]))

        await ingestor.reconcile(_Listing(kind=PODS, objects=[_pod("p2", pool="spot")]))
        await ingestor.reconcile(_Listing(kind=REPLICASETS, objects=[]))

        assert cache.tracked_pod_ids() == {"p2"}
        assert cache.ineligible_group_ids() == set()

    @pytest.mark.asyncio
    async def test_wait_ready_times_out(self):
        ingestor, _ = _ingestor()
        assert await ingestor.wait_ready(timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_wait_ready_returns_once_synced(self):
        ingestor, _ = _ingestor()
        waiter = asyncio.create_task(ingestor.wait_ready(timeout=2))
        await ingestor.reconcile(_Listing(kind=PODS, objects=[]))
        await ingestor.reconcile(_Listing(kind=REPLICASETS, objects=[]))
        assert await waiter is True


class TestFromWatch:
    def test_bookmark_ignored(self):
        assert from_watch(PODS, "BOOKMARK", {"metadata": {"resourceVersion": "9"}}) is None

    def test_malformed_object_skipped(self):
        assert from_watch(PODS, "ADDED", {"metadata": {"ownerReferences": 7}}) is None

    def test_modified_replicaset(self):
        event = from_watch(REPLICASETS, "MODIFIED", _replicaset("rs-a"))
        assert event is not None
        assert event.obj.metadata.uid == "rs-a"


class TestListWatch:
    def test_list_emits_listing_and_returns_resource_version(self):
        ingestor, _ = _ingestor()
        ingestor._core_api.list_pod_for_all_namespaces.return_value = MagicMock(
            items=[_pod("p1")], metadata=MagicMock(resource_version="17"),
        )
        emitted = []
        assert ingestor._list(PODS, emitted.append) == "17"
        assert emitted == [_Listing(kind=PODS, objects=[_pod("p1")])]

    def test_namespaced_list(self):
        cache = ReplicaAffinityCache()
        apps = MagicMock()
        apps.list_namespaced_replica_set.return_value = MagicMock(items=[], metadata=MagicMock(resource_version="3"))
        ingestor = WatchIngestor(cache, core_api=MagicMock(), apps_api=apps, namespace="shop")
        ingestor._list(REPLICASETS, lambda item: None)
        apps.list_namespaced_replica_set.assert_called_once_with(namespace="shop")

    def test_watch_emits_typed_events(self):
        ingestor, _ = _ingestor()
        with patch("src.observers.kubernetes.watch.Watch") as watch_cls:
            w = watch_cls.return_value
            w.resource_version = "25"
            w.stream.return_value = iter([
                {"type": "ADDED", "raw_object": _pod("p1")},
                {"type": "BOOKMARK", "raw_object": {"metadata": {"resourceVersion": "24"}}},
                {"type": "DELETED", "raw_object": _pod("p1")},
            ])
            emitted = []
            assert ingestor._watch(PODS, "20", emitted.append) == "25"

        assert [type(e) for e in emitted] == [PodAdded, PodDeleted]
        kwargs = w.stream.call_args.kwargs
        assert kwargs["resource_version"] == "20"
        assert kwargs["timeout_seconds"] == ingestor.watch_timeout
        w.stop.assert_called()

    def test_watch_error_event_raises_api_exception(self):
        ingestor, _ = _ingestor()
        with patch("src.observers.kubernetes.watch.Watch") as watch_cls:
            watch_cls.return_value.stream.return_value = iter([
                {"type": "ERROR", "raw_object": {"code": 410, "message": "too old resource version"}},
            ])
            with pytest.raises(ApiException) as exc:
                ingestor._watch(PODS, "1", lambda item: None)
        assert exc.value.status == 410

    def test_pump_relists_after_gone(self):
        ingestor, _ = _ingestor()
        ingestor._list = MagicMock(side_effect=["1", "2"])
        seen = []

        def fake_watch(kind, resource_version, emit):
            seen.append(resource_version)
            if len(seen) == 1:
                raise ApiException(status=410, reason="Gone")
            ingestor._stop.set()
            return resource_version

        ingestor._watch = fake_watch
        ingestor._pump(PODS, MagicMock(), MagicMock())

        assert ingestor._list.call_count == 2
        assert seen == ["1", "2"]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_syncs_and_stops(self):
        cache = ReplicaAffinityCache()
        core, apps = MagicMock(), MagicMock()
        core.list_pod_for_all_namespaces.return_value = MagicMock(
            items=[_pod("p1", pool="on-demand")], metadata=MagicMock(resource_version="1"),
        )
        apps.list_replica_set_for_all_namespaces.return_value = MagicMock(
            items=[_replicaset("rs-a")], metadata=MagicMock(resource_version="1"),
        )

        def idle_stream(*args, **kwargs):
            time.sleep(0.05)
            return iter([])

        with patch("src.observers.kubernetes.watch.Watch") as watch_cls:
            watch_cls.return_value.stream.side_effect = idle_stream
            ingestor = WatchIngestor(cache, core_api=core, apps_api=apps)
            assert await ingestor.start() is True
            assert await ingestor.wait_ready(timeout=5) is True
            assert cache.tracked_pod_ids() == {"p1"}

            threads = list(ingestor._threads)
            await ingestor.stop()
            for thread in threads:
                thread.join(timeout=2)
            assert not any(t.is_alive() for t in threads)
