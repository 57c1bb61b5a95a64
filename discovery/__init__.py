"""
Discovery: ingestion of externally sourced catalog items and
personalized discovery recommendations for the feed.
"""

from discovery.hook import CollectableDiscoveryHook, HookResult, HookStatus
from discovery.ingestion import DiscoveryIngestionJob, DiscoveryItem, IngestionResult, IngestionStatus
from discovery.payloads import DiscoveryPayload, build_payload
from discovery.recommendations import DiscoveryGroup, NewsRecommendations, ScoredItem

__all__ = [
    "CollectableDiscoveryHook",
    "HookResult",
    "HookStatus",
    "DiscoveryIngestionJob",
    "DiscoveryItem",
    "IngestionResult",
    "IngestionStatus",
    "DiscoveryPayload",
    "build_payload",
    "DiscoveryGroup",
    "NewsRecommendations",
    "ScoredItem",
]
