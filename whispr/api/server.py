"""
Operational HTTP surface (aiohttp.web).

Routes:
    POST /api/tenants/{tenant_id}/runs                    forced run over an explicit batch
    GET  /api/tenants/{tenant_id}/sessions                recent session summaries
    GET  /api/sessions/{session_id}                       full per-stage trace
    GET  /api/tenants/{tenant_id}/whispers                recent whispers
    POST /api/tenants/{tenant_id}/metadata                metadata ingestion
    POST /api/tenants/{tenant_id}/webhooks/{integration}  signed integration webhook
    GET  /health                                          readiness report
    GET  /health/live                                     liveness report
    GET  /metrics                                         Prometheus exposition

Responses use the ``{"success": bool, "data" | "error": ...}`` envelope,
except ``/health`` and ``/metrics``.
"""

import json
import time
from typing import Any, Dict, List, Optional

from aiohttp import web
from pydantic import ValidationError

from ..common_tools.errors import IngestionError, SignatureVerificationError, UnknownTenantError
from ..common_tools.health import HealthStatus
from ..common_tools.logging import get_logger, log_processing_error
from ..common_tools.models import WhisperStatus
from ..services import WhisprServices

SERVICES_KEY = web.AppKey("services", WhisprServices)
MAX_LIST_LIMIT = 200

logger = get_logger("api")


def _ok(data: Any, status: int = 200) -> web.Response:
    return web.json_response({"success": True, "data": data}, status=status)


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


def _limit(request: web.Request, default: int) -> int:
    raw = request.query.get("limit")
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "error": f"Invalid limit: {raw!r}"}),
            content_type="application/json",
        )
    return max(1, min(value, MAX_LIST_LIMIT))


async def _json_body(request: web.Request) -> Optional[Any]:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def _session_summary(session) -> Dict[str, Any]:
    return {
        "session_id": session.session_id,
        "status": session.status.value,
        "start_time": session.start_time.isoformat(),
        "end_time": session.end_time.isoformat() if session.end_time else None,
        "duration_ms": session.duration_ms,
        "agent_sequence": session.agent_sequence,
        "whisper_count": len(session.whisper_ids),
        "error_count": len(session.errors),
    }


async def force_run(request: web.Request) -> web.Response:
    """Run the pipeline immediately over the posted batch, bypassing the trigger."""
    services = request.app[SERVICES_KEY]
    tenant_id = request.match_info["tenant_id"]

    body = await _json_body(request)
    metadata = body.get("metadata") if isinstance(body, dict) else None
    if not isinstance(metadata, list) or not metadata:
        return _error("Request body must contain a non-empty 'metadata' list", 400)

    try:
        records = [services.ingestor.normalize(tenant_id, item) for item in metadata]
    except (ValidationError, TypeError, ValueError) as e:
        return _error(f"Invalid metadata record: {e}", 400)

    start_time = time.time()
    try:
        result = await services.executor.run(tenant_id, records)
    except Exception as e:
        log_processing_error(logger, e, "forced_run", tenant_id=tenant_id, recovery_action="return_500")
        return _error(str(e), 500)

    if not result.success:
        return _error(result.error or "Pipeline run failed", 500)

    logger.info(f"Forced run {result.session_id} for tenant {tenant_id} produced {result.whisper_count} whispers",
                tenant_id=tenant_id, session_id=result.session_id,
                extra_fields={"event_type": "forced_run", "duration_ms": int((time.time() - start_time) * 1000)})
    return web.json_response({
        "success": True,
        "sessionId": result.session_id,
        "whisperCount": result.whisper_count,
        "status": result.status.value if result.status else None,
    })


async def list_sessions(request: web.Request) -> web.Response:
    services = request.app[SERVICES_KEY]
    sessions = await services.session_store.list_for_tenant(request.match_info["tenant_id"],
                                                            limit=_limit(request, 20))
    return _ok([_session_summary(s) for s in sessions])


async def get_session(request: web.Request) -> web.Response:
    services = request.app[SERVICES_KEY]
    session_id = request.match_info["session_id"]
    session = await services.session_store.get(session_id)
    if session is None:
        return _error(f"Session not found: {session_id}", 404)
    trace = session.model_dump(mode="json")
    trace["duration_ms"] = session.duration_ms
    return _ok(trace)


async def list_whispers(request: web.Request) -> web.Response:
    services = request.app[SERVICES_KEY]
    status = None
    raw_status = request.query.get("status")
    if raw_status:
        try:
            status = WhisperStatus(raw_status)
        except ValueError:
            return _error(f"Invalid whisper status: {raw_status!r}", 400)
    whispers = await services.whisper_store.list_for_tenant(request.match_info["tenant_id"],
                                                            limit=_limit(request, 50), status=status)
    return _ok([w.model_dump(mode="json") for w in whispers])


async def ingest_metadata(request: web.Request) -> web.Response:
    """Accept one record object or ``{"metadata": [...]}``."""
    services = request.app[SERVICES_KEY]
    tenant_id = request.match_info["tenant_id"]

    body = await _json_body(request)
    if isinstance(body, dict) and "metadata" in body:
        items = body["metadata"]
    else:
        items = [body] if isinstance(body, dict) else None
    if not isinstance(items, list) or not items:
        return _error("Request body must be a metadata record or a non-empty 'metadata' list", 400)

    record_ids: List[str] = []
    try:
        for item in items:
            stored = await services.ingestor.submit_metadata(tenant_id, item)
            record_ids.append(stored.id)
    except (ValidationError, TypeError, ValueError) as e:
        return _error(f"Invalid metadata record: {e}", 400)
    except IngestionError as e:
        return _error(str(e), 503)

    return _ok({"accepted": len(record_ids), "record_ids": record_ids}, status=202)


async def receive_webhook(request: web.Request) -> web.Response:
    services = request.app[SERVICES_KEY]
    tenant_id = request.match_info["tenant_id"]
    integration = request.match_info["integration"]
    body = await request.read()

    try:
        result = await services.webhooks.handle(tenant_id, integration, request.headers, body)
    except SignatureVerificationError as e:
        logger.warning(f"Rejected {integration} webhook: {e}", tenant_id=tenant_id,
                       extra_fields={"event_type": "webhook_rejected", "integration": integration})
        return _error("Signature verification failed", 401)
    except UnknownTenantError as e:
        return _error(str(e), 404)
    except ValueError as e:
        return _error(str(e), 400)
    except IngestionError as e:
        return _error(str(e), 503)

    if result.challenge is not None:
        return web.json_response({"challenge": result.challenge})
    return _ok({"accepted": result.accepted, "record_ids": result.record_ids})


async def health(request: web.Request) -> web.Response:
    services = request.app[SERVICES_KEY]
    report = await services.health.check_readiness()
    status = 503 if report.status == HealthStatus.UNHEALTHY else 200
    return web.json_response(report.to_dict(), status=status)


async def liveness(request: web.Request) -> web.Response:
    services = request.app[SERVICES_KEY]
    report = await services.health.check_liveness()
    return web.json_response(report.to_dict())


async def metrics(request: web.Request) -> web.Response:
    services = request.app[SERVICES_KEY]
    return web.Response(body=services.metrics.render(),
                        headers={"Content-Type": services.metrics.content_type})


def create_app(services: WhisprServices) -> web.Application:
    app = web.Application()
    app[SERVICES_KEY] = services
    app.router.add_post("/api/tenants/{tenant_id}/runs", force_run)
    app.router.add_get("/api/tenants/{tenant_id}/sessions", list_sessions)
    app.router.add_get("/api/sessions/{session_id}", get_session)
    app.router.add_get("/api/tenants/{tenant_id}/whispers", list_whispers)
    app.router.add_post("/api/tenants/{tenant_id}/metadata", ingest_metadata)
    app.router.add_post("/api/tenants/{tenant_id}/webhooks/{integration}", receive_webhook)
    app.router.add_get("/health", health)
    app.router.add_get("/health/live", liveness)
    app.router.add_get("/metrics", metrics)
    return app
