# SpotAffinity/src/routes/mutate.py
# @ai-rules:
# 1. [Constraint]: Transport checks (content type, body, envelope) happen before the engine runs -> 400, cache untouched.
# 2. [Pattern]: Every WebhookError becomes HTTPException(status_code=err.status_code). The API server applies failurePolicy.
# 3. [Gotcha]: The API server appends ?timeout=10s to webhook calls; the engine deadline is derived from it minus a margin.
"""
Mutating admission endpoint.

Receives an AdmissionReview for a pod CREATE, asks the decision engine for a
node pool and answers with a JSON Patch pinning the pod to it.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from ..config import MUTATE_PATH, WEBHOOK_TIMEOUT_SECONDS
from ..dependencies import get_engine, get_ingestor
from ..engine.decision import AdmissionDecisionEngine, decode_pod
from ..engine.errors import AdmissionReviewError, WebhookError
from ..models import JSON_PATCH_TYPE, AdmissionResponse, AdmissionReview
from ..observers.kubernetes import WatchIngestor

logger = logging.getLogger(__name__)

# Time kept back from the API server deadline for writing the response
DEADLINE_MARGIN_SECONDS = float(os.getenv("DEADLINE_MARGIN_SECONDS", "0.5"))
# How long a request may wait for the initial listings before answering 503
READINESS_WAIT_SECONDS = float(os.getenv("READINESS_WAIT_SECONDS", "1"))

_DURATION = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m)?$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, None: 1.0}

router = APIRouter(tags=["admission"])


def admission_deadline(timeout: Optional[str]) -> float:
    """Seconds the engine may spend, from the API server's ?timeout= value."""
    seconds = float(WEBHOOK_TIMEOUT_SECONDS)
    if timeout:
        match = _DURATION.match(timeout.strip())
        if match:
            seconds = float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        else:
            logger.debug(f"Unparseable webhook timeout {timeout!r}; using {seconds}s")
    return max(seconds - DEADLINE_MARGIN_SECONDS, 0.1)


async def read_admission_review(request: Request) -> AdmissionReview:
    """Validate the transport-level envelope. Raises AdmissionReviewError."""
    content_type = request.headers.get("content-type", "")
    if content_type.split(";")[0].strip().lower() != "application/json":
        raise AdmissionReviewError(f"content type must be application/json, got {content_type!r}")

    try:
        body = await request.body()
    except ClientDisconnect as e:
        raise AdmissionReviewError("client disconnected while sending the body") from e

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise AdmissionReviewError(f"body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise AdmissionReviewError("body must be a JSON object")

    try:
        review = AdmissionReview.model_validate(payload)
    except ValidationError as e:
        raise AdmissionReviewError(f"malformed AdmissionReview: {e.error_count()} validation error(s)") from e
    if review.request is None:
        raise AdmissionReviewError("AdmissionReview carries no request")
    return review


@router.post(MUTATE_PATH)
async def mutate(
    request: Request,
    timeout: Optional[str] = Query(None, description="Deadline appended by the API server, e.g. 10s"),
    engine: AdmissionDecisionEngine = Depends(get_engine),
    ingestor: WatchIngestor = Depends(get_ingestor),
) -> JSONResponse:
    """
    Decide the node pool for one pod.

    200 with a patch (or without one for pods the policy does not apply to);
    400 for transport errors, 500 for decode/encode errors, 503 before the
    watch cache is synced, 504 when the deadline runs out.
    """
    uid = "<unknown>"
    try:
        review = await read_admission_review(request)
        uid = review.request.uid

        budget = admission_deadline(timeout)
        if not ingestor.is_ready():
            loop = asyncio.get_running_loop()
            started = loop.time()
            if not await ingestor.wait_ready(timeout=min(READINESS_WAIT_SECONDS, budget / 2)):
                logger.warning(f"Request {uid} refused: watch cache not synced")
                raise HTTPException(status_code=503, detail="watch cache not synced")
            budget -= loop.time() - started

        pod = decode_pod(review.request.object)
        decision = await engine.admit(pod, uid, timeout=budget)

        response = AdmissionResponse(uid=uid, allowed=True)
        if decision.is_noop:
            logger.debug(f"Request {uid}: pod {pod.display_name} left unmutated ({decision.reason})")
        else:
            response.patch_type = JSON_PATCH_TYPE
            response.patch = decision.patch

    except WebhookError as e:
        logger.error(f"Request {uid} failed ({type(e).__name__}): {e.reason}")
        raise HTTPException(status_code=e.status_code, detail=e.reason)

    out = AdmissionReview(api_version=review.api_version, kind="AdmissionReview", response=response)
    return JSONResponse(content=out.model_dump(by_alias=True, exclude_none=True))
