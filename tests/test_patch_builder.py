# SpotAffinity/tests/test_patch_builder.py
# @ai-rules:
# 1. [Pattern]: _apply_patch is a minimal RFC 6902 applier (add/replace) used to check what the API server would persist.
# 2. [Constraint]: Byte-level expectations are literal strings -- any change to field order must show up here.
"""Unit tests for the patch builder: operation shape, minimal touch, deterministic encoding."""
from __future__ import annotations

import base64
import copy
import json
from typing import Any

import pytest

from src.engine.patch import build_patch, encode_patch, encode_patch_b64
from src.models import CAPACITY_LABEL_KEY, KubeObject, NodePool, PatchOperation

REQUIRED = "requiredDuringSchedulingIgnoredDuringExecution"


def _apply_patch(document: dict, operations: list[PatchOperation]) -> dict:
    doc = copy.deepcopy(document)
    for op in operations:
        *parents, last = [p.replace("~1", "/").replace("~0", "~") for p in op.path.lstrip("/").split("/")]
        target: Any = doc
        for part in parents:
            target = target[int(part)] if isinstance(target, list) else target[part]
        value = copy.deepcopy(op.value)
        if isinstance(target, list):
            if op.op == "add":
                target.insert(len(target) if last == "-" else int(last), value)
            else:
                target[int(last)] = value
        else:
            if op.op == "replace":
                assert last in target, f"replace of missing member {op.path}"
            target[last] = value
    return doc


def _capacity_expressions(doc: dict) -> list[list[dict]]:
    """Capacity expressions per node selector term."""
    terms = doc["spec"]["affinity"]["nodeAffinity"][REQUIRED]["nodeSelectorTerms"]
    return [
        [e for e in term.get("matchExpressions", []) if e["key"] == CAPACITY_LABEL_KEY]
        for term in terms
    ]


def _pod(spec: dict) -> dict:
    return {"apiVersion": "v1", "kind": "Pod", "metadata": {"generateName": "web-"}, "spec": spec}


BASE_SPEC = {"containers": [{"name": "web", "image": "nginx"}]}


class TestOperationShape:
    def test_pod_without_affinity_gets_single_add(self):
        ops = build_patch(NodePool.ON_DEMAND, KubeObject.model_validate(_pod(dict(BASE_SPEC))))
        assert len(ops) == 1
        assert ops[0].op == "add"
        assert ops[0].path == "/spec/affinity"

    def test_scenario_a_exact_bytes(self):
        ops = build_patch(NodePool.ON_DEMAND, KubeObject.model_validate(_pod(dict(BASE_SPEC))))
        assert encode_patch(ops) == (
            b'[{"op":"add","path":"/spec/affinity","value":{"nodeAffinity":'
            b'{"requiredDuringSchedulingIgnoredDuringExecution":{"nodeSelectorTerms":'
            b'[{"matchExpressions":[{"key":"node.kubernetes.io/capacity","operator":"In",'
            b'"values":["on-demand"]}]}]}}}}]'
        )

    def test_unassigned_pool_rejected(self):
        with pytest.raises(ValueError):
            build_patch(NodePool.UNASSIGNED, KubeObject.model_validate(_pod(dict(BASE_SPEC))))


class TestMinimalTouch:
    def test_existing_pod_anti_affinity_preserved(self):
        anti = {"requiredDuringSchedulingIgnoredDuringExecution": [
            {"topologyKey": "kubernetes.io/hostname", "labelSelector": {"matchLabels": {"app": "web"}}}
        ]}
        doc = _pod({**BASE_SPEC, "affinity": {"podAntiAffinity": anti}})
        ops = build_patch(NodePool.SPOT, KubeObject.model_validate(doc))
        assert [o.path for o in ops] == ["/spec/affinity/nodeAffinity"]

        patched = _apply_patch(doc, ops)
        assert patched["spec"]["affinity"]["podAntiAffinity"] == anti
        assert _capacity_expressions(patched) == [
            [{"key": CAPACITY_LABEL_KEY, "operator": "In", "values": ["spot"]}]
        ]

    def test_preferred_node_affinity_preserved(self):
        preferred = [{"weight": 10, "preference": {"matchExpressions": [
            {"key": "zone", "operator": "In", "values": ["a"]}
        ]}}]
        doc = _pod({**BASE_SPEC, "affinity": {"nodeAffinity": {
            "preferredDuringSchedulingIgnoredDuringExecution": preferred,
        }}})
        ops = build_patch(NodePool.ON_DEMAND, KubeObject.model_validate(doc))
        assert [o.path for o in ops] == [f"/spec/affinity/nodeAffinity/{REQUIRED}"]

        patched = _apply_patch(doc, ops)
        node_affinity = patched["spec"]["affinity"]["nodeAffinity"]
        assert node_affinity["preferredDuringSchedulingIgnoredDuringExecution"] == preferred
        assert len(_capacity_expressions(patched)) == 1

    def test_existing_required_terms_each_get_expression(self):
        doc = _pod({**BASE_SPEC, "affinity": {"nodeAffinity": {REQUIRED: {"nodeSelectorTerms": [
            {"matchExpressions": [{"key": "arch", "operator": "In", "values": ["arm64"]}]},
            {"matchExpressions": [{"key": CAPACITY_LABEL_KEY, "operator": "In", "values": ["spot"]}]},
            {"matchFields": [{"key": "metadata.name", "operator": "In", "values": ["n1"]}]},
        ]}}}})
        ops = build_patch(NodePool.ON_DEMAND, KubeObject.model_validate(doc))
        assert [o.op for o in ops] == ["add", "replace", "add"]

        patched = _apply_patch(doc, ops)
        on_demand = {"key": CAPACITY_LABEL_KEY, "operator": "In", "values": ["on-demand"]}
        assert _capacity_expressions(patched) == [[on_demand], [on_demand], [on_demand]]
        terms = patched["spec"]["affinity"]["nodeAffinity"][REQUIRED]["nodeSelectorTerms"]
        assert terms[0]["matchExpressions"][0]["key"] == "arch"
        assert terms[2]["matchFields"][0]["key"] == "metadata.name"

    def test_required_without_terms(self):
        doc = _pod({**BASE_SPEC, "affinity": {"nodeAffinity": {REQUIRED: {"nodeSelectorTerms": []}}}})
        ops = build_patch(NodePool.SPOT, KubeObject.model_validate(doc))
        assert len(ops) == 1
        patched = _apply_patch(doc, ops)
        assert _capacity_expressions(patched) == [
            [{"key": CAPACITY_LABEL_KEY, "operator": "In", "values": ["spot"]}]
        ]


class TestEncoding:
    def test_identical_decisions_identical_bytes(self):
        pod = KubeObject.model_validate(_pod(dict(BASE_SPEC)))
        first = encode_patch(build_patch(NodePool.SPOT, pod))
        second = encode_patch(build_patch(NodePool.SPOT, KubeObject.model_validate(_pod(dict(BASE_SPEC)))))
        assert first == second

    def test_b64_wraps_json(self):
        ops = build_patch(NodePool.SPOT, KubeObject.model_validate(_pod(dict(BASE_SPEC))))
        decoded = base64.b64decode(encode_patch_b64(ops))
        assert decoded == encode_patch(ops)
        assert json.loads(decoded)[0]["value"]["nodeAffinity"][REQUIRED]["nodeSelectorTerms"][0][
            "matchExpressions"][0]["values"] == ["spot"]

    def test_round_trip_yields_one_affinity_entry(self):
        doc = _pod(dict(BASE_SPEC))
        patched = _apply_patch(doc, build_patch(NodePool.ON_DEMAND, KubeObject.model_validate(doc)))
        assert _capacity_expressions(patched) == [
            [{"key": CAPACITY_LABEL_KEY, "operator": "In", "values": ["on-demand"]}]
        ]
        assert patched["spec"]["containers"] == doc["spec"]["containers"]
