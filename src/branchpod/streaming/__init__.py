"""Live output fan-out."""

from branchpod.streaming.diff import CaptureDelta, DeltaKind, compute_delta, normalize_capture
from branchpod.streaming.hub import StreamHub, Subscription

__all__ = [
    "CaptureDelta",
    "DeltaKind",
    "StreamHub",
    "Subscription",
    "compute_delta",
    "normalize_capture",
]
