"""
Privacy-scrubbing normalizers for integration webhook events.

Only structural facts survive normalization: ids, counts, lengths, flags and
timing. Message text, code, titles and descriptions are read at most to
measure them and are never copied into a record.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..common_tools.models import MetadataRecord
from .metadata_typing import derive_metadata_type

_EMOJI_RE = re.compile(r":[a-z0-9_+\-']+:")

# Message subtypes that are edits, deletions or automation rather than people talking
IGNORED_SLACK_SUBTYPES = frozenset({
    "bot_message", "message_changed", "message_deleted", "channel_join", "channel_leave",
})


def time_category(hour: int) -> str:
    if hour < 6:
        return "late_night"
    if hour < 9:
        return "early_morning"
    if hour < 18:
        return "work_hours"
    if hour < 22:
        return "evening"
    return "late_night"


def timing_fields(moment: datetime) -> Dict[str, Any]:
    moment = moment.astimezone(timezone.utc)
    return {
        "hour_of_day": moment.hour,
        "day_of_week": moment.weekday(),
        "time_category": time_category(moment.hour),
        "is_weekend": moment.weekday() >= 5,
    }


def _from_slack_ts(ts: Optional[str]) -> datetime:
    if not ts:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def extract_slack_metadata(tenant_id: str, envelope: Dict[str, Any]) -> Optional[MetadataRecord]:
    """
    Build a record from a Slack Events API ``event_callback`` envelope.

    Returns:
        The record, or None for events that carry no team activity
    """
    event = envelope.get("event") or {}
    event_kind = event.get("type")

    if event_kind == "message":
        if event.get("bot_id") or event.get("subtype") in IGNORED_SLACK_SUBTYPES:
            return None
        text = event.get("text") or ""
        moment = _from_slack_ts(event.get("ts"))
        thread_ts = event.get("thread_ts")
        payload = {
            "channel_id": event.get("channel"),
            "channel_type": event.get("channel_type"),
            "user_id": event.get("user"),
            "is_thread_reply": bool(thread_ts and thread_ts != event.get("ts")),
            "message_length": len(text),
            "has_emoji": bool(_EMOJI_RE.search(text)),
            "mention_count": text.count("<@"),
            **timing_fields(moment),
        }
        event_type = "message"
    elif event_kind in ("reaction_added", "reaction_removed"):
        item = event.get("item") or {}
        moment = _from_slack_ts(event.get("event_ts"))
        payload = {
            "channel_id": item.get("channel"),
            "user_id": event.get("user"),
            "reaction": event.get("reaction"),
            "removed": event_kind == "reaction_removed",
            **timing_fields(moment),
        }
        event_type = "reaction"
    else:
        return None

    fields: Dict[str, Any] = {
        "tenant_id": tenant_id,
        "source_integration": "slack",
        "event_type": event_type,
        "metadata_type": derive_metadata_type("slack", event_type),
        "timestamp": moment,
        "payload": payload,
    }
    # Slack redelivers events on timeout; the event id makes the retry a duplicate
    if envelope.get("event_id"):
        fields["id"] = f"slack_{envelope['event_id']}"
    return MetadataRecord(**fields)


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _hours_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return round((end - start).total_seconds() / 3600, 2)


def extract_github_metadata(tenant_id: str, event_name: str, body: Dict[str, Any],
                            delivery_id: Optional[str] = None) -> List[MetadataRecord]:
    """Build records from one GitHub webhook delivery; unknown events yield a generic record."""
    event_name = (event_name or "").lower()
    repository = (body.get("repository") or {}).get("id")
    sender = (body.get("sender") or {}).get("id")
    action = body.get("action")
    moment = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {"repository_id": repository, "actor_id": sender, "action": action}

    if event_name == "push":
        commits = body.get("commits") or []
        head = body.get("head_commit") or {}
        moment = _parse_iso(head.get("timestamp")) or moment
        payload.update({
            "commit_count": len(commits),
            "distinct_authors": len({(c.get("author") or {}).get("email") for c in commits}),
            "is_default_branch": body.get("ref") == f"refs/heads/{(body.get('repository') or {}).get('default_branch')}",
            "forced": bool(body.get("forced")),
        })
    elif event_name == "pull_request":
        pr = body.get("pull_request") or {}
        created = _parse_iso(pr.get("created_at"))
        merged = _parse_iso(pr.get("merged_at"))
        closed = _parse_iso(pr.get("closed_at"))
        moment = _parse_iso(pr.get("updated_at")) or moment
        payload.update({
            "pr_number": pr.get("number"),
            "merged": bool(pr.get("merged")),
            "draft": bool(pr.get("draft")),
            "commits": pr.get("commits"),
            "additions": pr.get("additions"),
            "deletions": pr.get("deletions"),
            "changed_files": pr.get("changed_files"),
            "review_comments": pr.get("review_comments"),
            "hours_to_merge": _hours_between(created, merged),
            "hours_open": _hours_between(created, closed),
        })
    elif event_name in ("pull_request_review", "pull_request_review_comment"):
        review = body.get("review") or body.get("comment") or {}
        pr = body.get("pull_request") or {}
        submitted = _parse_iso(review.get("submitted_at") or review.get("created_at"))
        moment = submitted or moment
        payload.update({
            "pr_number": pr.get("number"),
            "review_state": review.get("state"),
            "hours_since_pr_opened": _hours_between(_parse_iso(pr.get("created_at")), submitted),
        })
    elif event_name in ("issues", "issue_comment"):
        issue = body.get("issue") or {}
        created = _parse_iso(issue.get("created_at"))
        closed = _parse_iso(issue.get("closed_at"))
        moment = _parse_iso(issue.get("updated_at")) or moment
        payload.update({
            "issue_number": issue.get("number"),
            "state": issue.get("state"),
            "comment_count": issue.get("comments"),
            "label_count": len(issue.get("labels") or []),
            "hours_to_close": _hours_between(created, closed),
        })

    payload.update(timing_fields(moment))
    fields: Dict[str, Any] = {
        "tenant_id": tenant_id,
        "source_integration": "github",
        "event_type": event_name or "unknown",
        "metadata_type": derive_metadata_type("github", event_name),
        "timestamp": moment,
        "payload": payload,
    }
    if delivery_id:
        fields["id"] = f"github_{delivery_id}"
    return [MetadataRecord(**fields)]
