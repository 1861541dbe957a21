"""
External collaborators: evidence search, reasoning units, notifications.
"""

from dealbot.providers.base import (
    EvidenceProvider,
    NotificationSink,
    ReasoningRunner,
    SearchOptions,
    SearchResult,
    evidence_id_for,
)
from dealbot.providers.reasoning_client import HttpReasoningRunner, extract_json
from dealbot.providers.search_client import HttpSearchProvider
from dealbot.providers.webhook import WebhookNotifier

__all__ = [
    "EvidenceProvider",
    "HttpReasoningRunner",
    "HttpSearchProvider",
    "NotificationSink",
    "ReasoningRunner",
    "SearchOptions",
    "SearchResult",
    "WebhookNotifier",
    "evidence_id_for",
    "extract_json",
]
