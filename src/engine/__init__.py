"""Admission decision path: eligibility, node pool allocation, patch encoding."""
from .decision import AdmissionDecisionEngine, Decision, decode_pod
from .errors import AdmissionReviewError, DeadlineExceeded, DecodeError, EncodeError, WebhookError
from .patch import build_patch, encode_patch, encode_patch_b64

__all__ = [
    "AdmissionDecisionEngine",
    "AdmissionReviewError",
    "DeadlineExceeded",
    "Decision",
    "DecodeError",
    "EncodeError",
    "WebhookError",
    "build_patch",
    "decode_pod",
    "encode_patch",
    "encode_patch_b64",
]
