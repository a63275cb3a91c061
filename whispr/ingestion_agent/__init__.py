"""Metadata ingestion: typing, webhook verification, event normalization and enrichment."""

from .analyzers import analyze_channel_participation, analyze_emoji_trends, build_enrichment_records
from .metadata_typing import INTEGRATION_CAPABILITIES, available_types_for, derive_metadata_type
from .signatures import verify_github_signature, verify_slack_signature
from .event_extraction import extract_github_metadata, extract_slack_metadata
from .ingestion import MetadataIngestor, WebhookIngestor, WebhookResult

__all__ = [
    "analyze_channel_participation",
    "analyze_emoji_trends",
    "build_enrichment_records",
    "INTEGRATION_CAPABILITIES",
    "available_types_for",
    "derive_metadata_type",
    "verify_github_signature",
    "verify_slack_signature",
    "extract_github_metadata",
    "extract_slack_metadata",
    "MetadataIngestor",
    "WebhookIngestor",
    "WebhookResult",
]
