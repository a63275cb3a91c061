"""
Session/audit log storage and the per-run session recorder.

A session is created when a pipeline run starts, appended to while it runs
and frozen once it reaches a terminal status. Stores refuse to overwrite a
finalized session.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis

from .errors import SessionFinalizedError, SessionNotFoundError
from .logging import get_logger
from .models import AgentSession, SessionStatus, StageLog, TERMINAL_STATUSES
from .redis_tools import RedisKeys


class SessionStore:
    """Base class for session storage."""

    async def create(self, session: AgentSession) -> None:
        raise NotImplementedError("Subclasses must implement create")

    async def get(self, session_id: str) -> Optional[AgentSession]:
        raise NotImplementedError("Subclasses must implement get")

    async def save(self, session: AgentSession) -> None:
        """Replace a session; raises SessionFinalizedError if the stored copy is final."""
        raise NotImplementedError("Subclasses must implement save")

    async def list_for_tenant(self, tenant_id: str, limit: int = 20) -> List[AgentSession]:
        """Newest first."""
        raise NotImplementedError("Subclasses must implement list_for_tenant")


class RedisSessionStore(SessionStore):

    def __init__(self, client: aioredis.Redis, keys: Optional[RedisKeys] = None):
        self.redis = client
        self.keys = keys or RedisKeys()

    async def create(self, session: AgentSession) -> None:
        created = await self.redis.set(self.keys.session(session.session_id), session.to_json(), nx=True)
        if not created:
            raise ValueError(f"Session {session.session_id} already exists")
        await self.redis.zadd(self.keys.tenant_sessions(session.tenant_id),
                              {session.session_id: session.start_time.timestamp()})

    async def get(self, session_id: str) -> Optional[AgentSession]:
        data = await self.redis.get(self.keys.session(session_id))
        return AgentSession.from_json(data) if data else None

    async def save(self, session: AgentSession) -> None:
        stored = await self.get(session.session_id)
        if stored is None:
            raise SessionNotFoundError(session.session_id)
        if stored.is_finalized:
            raise SessionFinalizedError(f"Session {session.session_id} is already {stored.status.value}")
        await self.redis.set(self.keys.session(session.session_id), session.to_json())

    async def list_for_tenant(self, tenant_id: str, limit: int = 20) -> List[AgentSession]:
        ids = await self.redis.zrevrange(self.keys.tenant_sessions(tenant_id), 0, limit - 1)
        sessions = []
        for session_id in ids:
            session = await self.get(session_id)
            if session is not None:
                sessions.append(session)
        return sessions


class InMemorySessionStore(SessionStore):

    def __init__(self):
        self._sessions: Dict[str, AgentSession] = {}

    async def create(self, session: AgentSession) -> None:
        if session.session_id in self._sessions:
            raise ValueError(f"Session {session.session_id} already exists")
        self._sessions[session.session_id] = session.model_copy(deep=True)

    async def get(self, session_id: str) -> Optional[AgentSession]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def save(self, session: AgentSession) -> None:
        stored = self._sessions.get(session.session_id)
        if stored is None:
            raise SessionNotFoundError(session.session_id)
        if stored.is_finalized:
            raise SessionFinalizedError(f"Session {session.session_id} is already {stored.status.value}")
        self._sessions[session.session_id] = session.model_copy(deep=True)

    async def list_for_tenant(self, tenant_id: str, limit: int = 20) -> List[AgentSession]:
        sessions = [s for s in self._sessions.values() if s.tenant_id == tenant_id]
        sessions.sort(key=lambda s: s.start_time, reverse=True)
        return [s.model_copy(deep=True) for s in sessions[:limit]]


class SessionRecorder:
    """
    Mutable handle on one run's session.

    Every step is mirrored to the structured log and written through to the
    store, so a crashed run still leaves a readable partial trace.
    """

    def __init__(self, store: SessionStore, session: AgentSession):
        self.store = store
        self.session = session
        self.logger = get_logger("session").bind(tenant_id=session.tenant_id, session_id=session.session_id)

    @classmethod
    async def start(cls, store: SessionStore, tenant_id: str,
                    session_id: Optional[str] = None) -> 'SessionRecorder':
        fields: Dict[str, Any] = {"tenant_id": tenant_id, "status": SessionStatus.RUNNING}
        if session_id:
            fields["session_id"] = session_id
        session = AgentSession(**fields)
        await store.create(session)
        return cls(store, session)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def _ensure_open(self):
        if self.session.is_finalized:
            raise SessionFinalizedError(f"Session {self.session_id} is already {self.session.status.value}")

    async def log_step(self, agent: str, step: str, data: Optional[Dict[str, Any]] = None,
                       level: str = "info", message: str = "") -> None:
        self._ensure_open()
        entry = StageLog(agent=agent, step=step, level=level, message=message, data=data or {})
        self.session.logs.append(entry)

        self.logger.log(level, f"[{agent}] {step}", module=agent,
                        extra_fields={"event_type": "agent_step", "step": step, **(data or {})})
        await self.store.save(self.session)

    async def record_stage(self, stage_id: str, duration_ms: int, preview: str) -> None:
        self._ensure_open()
        self.session.stage_durations[stage_id] = duration_ms
        self.session.outputs[stage_id] = preview
        await self.store.save(self.session)

    async def set_sequence(self, sequence: List[str]) -> None:
        self._ensure_open()
        self.session.agent_sequence = list(sequence)
        await self.store.save(self.session)

    async def add_error(self, agent: str, error: str, **details: Any) -> None:
        """Append to the run's error list and log it as an error step."""
        self._ensure_open()
        entry = {"agent": agent, "error": error, **details}
        self.session.errors.append(entry)
        await self.log_step(agent, "ERROR", data=entry, level="error", message=error)

    async def add_whispers(self, whisper_ids: List[str]) -> None:
        self._ensure_open()
        self.session.whisper_ids.extend(whisper_ids)
        await self.store.save(self.session)

    async def finalize(self, status: SessionStatus, error: Optional[str] = None) -> AgentSession:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal session status")
        self._ensure_open()
        self.session.status = status
        self.session.end_time = datetime.now(timezone.utc)
        self.session.error = error
        await self.store.save(self.session)
        return self.session
