"""Per-tenant integration settings used by ingestion and delivery."""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional


@dataclass
class TenantProfile:
    """
    Integration settings for one tenant.

    Secrets are held here only so webhook verification and Slack delivery can
    resolve them by tenant id; tenant CRUD lives outside this service.
    """
    tenant_id: str
    name: str = ""
    integrations: List[str] = field(default_factory=list)
    slack_bot_token: Optional[str] = None
    slack_signing_secret: Optional[str] = None
    github_webhook_secret: Optional[str] = None
    admin_user_id: Optional[str] = None
    fallback_channel: Optional[str] = None

    def __post_init__(self):
        if not self.tenant_id:
            raise ValueError("tenant_id cannot be empty")
        self.integrations = [i.lower() for i in self.integrations]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TenantProfile':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def signing_secret_for(self, integration: str) -> Optional[str]:
        if integration == "slack":
            return self.slack_signing_secret
        if integration == "github":
            return self.github_webhook_secret
        return None


class TenantDirectory:
    """Thread-safe lookup of tenant profiles by id."""

    def __init__(self, profiles: Optional[Iterable[TenantProfile]] = None):
        self._lock = threading.Lock()
        self._profiles: Dict[str, TenantProfile] = {}
        for profile in profiles or []:
            self.register(profile)

    def register(self, profile: TenantProfile) -> None:
        with self._lock:
            self._profiles[profile.tenant_id] = profile

    def get(self, tenant_id: str) -> Optional[TenantProfile]:
        with self._lock:
            return self._profiles.get(tenant_id)

    def tenant_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._profiles)
