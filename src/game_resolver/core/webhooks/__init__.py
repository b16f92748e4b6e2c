"""カタログ更新 Webhook のフィルタパイプライン。"""

from .filtering import FilterPolicy, RejectionReason, filter_update
from .pipeline import (
    RejectionException,
    StageCounters,
    WebhookOutcome,
    WebhookPipeline,
    WebhookResult,
)
from .prefilter import PrefilterRejectionReason, prefilter

__all__ = [
    "FilterPolicy",
    "PrefilterRejectionReason",
    "RejectionException",
    "RejectionReason",
    "StageCounters",
    "WebhookOutcome",
    "WebhookPipeline",
    "WebhookResult",
    "filter_update",
    "prefilter",
]
