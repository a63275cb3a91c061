"""Metadata type derivation and the integration capability registry."""

from typing import Dict, Iterable, Set, Tuple

# Metadata types each integration can produce
INTEGRATION_CAPABILITIES: Dict[str, Tuple[str, ...]] = {
    "slack": ("communication_metadata", "emoji_usage", "channel_activity", "message_frequency"),
    "github": ("commit_activity", "pr_lifecycle", "issue_tracking", "code_review"),
}


def derive_metadata_type(source_integration: str, event_type: str) -> str:
    """
    Map an integration event to the metadata type the pipeline consumes.

    >>> derive_metadata_type("github", "pull_request")
    'pr_lifecycle'
    """
    source = (source_integration or "").strip().lower()
    event = (event_type or "").strip().lower()

    if source == "slack":
        return "communication_metadata"
    if source == "github":
        if event in ("push", "commit") or event.startswith("commit"):
            return "commit_activity"
        # review events start with "pull_request" too, so check them first
        if "review" in event:
            return "code_review"
        if event.startswith("pull_request"):
            return "pr_lifecycle"
        if event.startswith("issue"):
            return "issue_tracking"
        return "development_activity"
    return f"{source}_activity"


def available_types_for(integrations: Iterable[str]) -> Set[str]:
    """Union of metadata types offered by the given integrations; unknown ones contribute nothing."""
    types: Set[str] = set()
    for integration in integrations:
        types.update(INTEGRATION_CAPABILITIES.get(integration.lower(), ()))
    return types
