"""
Ingestion entry points.

``MetadataIngestor.submit_metadata`` is the single write path for metadata:
store first, then notify the batching trigger. It returns as soon as both are
done and never waits for analysis. ``WebhookIngestor`` verifies signed
integration webhooks with the tenant's key and feeds the normalized records
through the same path.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError
from redis.exceptions import RedisError

from ..common_tools.errors import IngestionError, UnknownTenantError
from ..common_tools.logging import get_logger
from ..common_tools.metadata_store import MetadataStore
from ..common_tools.metrics import WhisprMetrics
from ..common_tools.models import MetadataRecord, ProcessingStatus
from ..config.tenants import TenantDirectory
from ..organizer_agent.trigger_coordinator import TriggerCoordinator
from .event_extraction import extract_github_metadata, extract_slack_metadata
from .metadata_typing import derive_metadata_type
from .signatures import DEFAULT_TOLERANCE_SECONDS, verify_github_signature, verify_slack_signature


class MetadataIngestor:
    """Validates, stores and announces metadata records."""

    def __init__(self, store: MetadataStore, trigger: TriggerCoordinator,
                 metrics: Optional[WhisprMetrics] = None):
        self.store = store
        self.trigger = trigger
        self.metrics = metrics
        self.logger = get_logger("ingestion")

    def normalize(self, tenant_id: str, record: Union[MetadataRecord, Mapping[str, Any]]) -> MetadataRecord:
        """
        Stamp the tenant and fill in the metadata type.

        Raises:
            ValueError: the record does not validate (pydantic ``ValidationError``)
        """
        if isinstance(record, MetadataRecord):
            data = record.model_dump()
        else:
            data = dict(record)
        data["tenant_id"] = tenant_id
        data["processing_status"] = ProcessingStatus.PENDING
        normalized = MetadataRecord.model_validate(data)
        if not normalized.metadata_type:
            normalized.metadata_type = derive_metadata_type(normalized.source_integration, normalized.event_type)
        return normalized

    async def submit_metadata(self, tenant_id: str,
                              record: Union[MetadataRecord, Mapping[str, Any]]) -> MetadataRecord:
        """
        Durably store one record and notify the trigger coordinator.

        A record whose id is already stored is not counted again.

        Raises:
            IngestionError: the metadata store could not persist the record
        """
        normalized = self.normalize(tenant_id, record)

        try:
            stored = await self.store.append(normalized)
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to store metadata record {normalized.id}: {e}",
                              tenant_id=tenant_id,
                              extra_fields={"event_type": "ingestion_failed", "error_type": type(e).__name__})
            if self.metrics:
                self.metrics.increment_error(type(e).__name__, component="ingestion")
            raise IngestionError(f"Could not store metadata record {normalized.id}: {e}",
                                 tenant_id=tenant_id) from e

        if not stored:
            self.logger.debug(f"Duplicate metadata record {normalized.id} ignored", tenant_id=tenant_id)
            return normalized

        decision = await self.trigger.record_arrived(tenant_id)
        if self.metrics:
            self.metrics.increment_ingested(normalized.metadata_type or "unknown")
        self.logger.debug(
            f"Stored metadata record {normalized.id} ({normalized.metadata_type})",
            tenant_id=tenant_id,
            extra_fields={"event_type": "metadata_ingested", "trigger_decision": decision.value}
        )
        return normalized


@dataclass
class WebhookResult:
    accepted: int = 0
    record_ids: List[str] = field(default_factory=list)
    challenge: Optional[str] = None


class WebhookIngestor:
    """Single signed-webhook entry point for all integrations."""

    SUPPORTED_INTEGRATIONS = ("slack", "github")

    def __init__(self, ingestor: MetadataIngestor, tenants: TenantDirectory,
                 tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        self.ingestor = ingestor
        self.tenants = tenants
        self.tolerance_seconds = tolerance_seconds
        self.logger = get_logger("webhooks")

    async def handle(self, tenant_id: str, integration: str, headers: Mapping[str, str],
                     body: bytes, now: Optional[float] = None) -> WebhookResult:
        """
        Verify and ingest one webhook delivery.

        Raises:
            UnknownTenantError: no profile for ``tenant_id``
            SignatureVerificationError: the signature does not verify
            ValueError: unsupported integration or undecodable body
        """
        integration = integration.lower()
        if integration not in self.SUPPORTED_INTEGRATIONS:
            raise ValueError(f"Unsupported integration: {integration}")
        profile = self.tenants.get(tenant_id)
        if profile is None:
            raise UnknownTenantError(f"Unknown tenant: {tenant_id}")

        secret = profile.signing_secret_for(integration)
        if integration == "slack":
            verify_slack_signature(secret, headers.get("X-Slack-Request-Timestamp"), body,
                                   headers.get("X-Slack-Signature"), now=now,
                                   tolerance=self.tolerance_seconds)
        else:
            verify_github_signature(secret, body, headers.get("X-Hub-Signature-256"))

        try:
            envelope = json.loads(body or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"Webhook body is not valid JSON: {e}") from e

        if integration == "slack":
            if envelope.get("type") == "url_verification":
                return WebhookResult(challenge=envelope.get("challenge"))
            slack_record = extract_slack_metadata(tenant_id, envelope)
            records = [slack_record] if slack_record is not None else []
        else:
            records = extract_github_metadata(tenant_id, headers.get("X-GitHub-Event", ""), envelope,
                                              delivery_id=headers.get("X-GitHub-Delivery"))

        result = WebhookResult()
        for record in records:
            try:
                stored = await self.ingestor.submit_metadata(tenant_id, record)
            except ValidationError as e:
                raise ValueError(f"Webhook produced an invalid record: {e}") from e
            result.accepted += 1
            result.record_ids.append(stored.id)
        self.logger.info(f"Webhook from {integration} accepted {result.accepted} records",
                         tenant_id=tenant_id,
                         extra_fields={"event_type": "webhook_ingested", "integration": integration})
        return result
