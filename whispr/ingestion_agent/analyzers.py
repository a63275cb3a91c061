"""
Enrichment analyzers run over a tenant batch before the pipeline.

They summarise communication records into ``channel_activity`` and
``emoji_usage`` records so the communication stage receives aggregate views
alongside the raw events. Derived records are run input only; they are never
stored and never marked processed.
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from ..common_tools.models import MetadataRecord, MetadataType, ProcessingStatus

PARTICIPATION_TREND_THRESHOLD_PCT = 10.0
EMOJI_TREND_THRESHOLD_PCT = 20.0
MIN_DAYS_FOR_TREND = 3
RESPONSE_GAP_HOURS = 1.0


def _trend(values: List[float], threshold_pct: float) -> str:
    """Compare the mean of the first half of a daily series to the second half."""
    if len(values) < MIN_DAYS_FOR_TREND:
        return "stable"
    middle = len(values) // 2
    first = sum(values[:middle]) / middle
    second = sum(values[middle:]) / (len(values) - middle)
    if first <= 0:
        return "stable"
    change = (second - first) / first * 100
    if change > threshold_pct:
        return "rising"
    if change < -threshold_pct:
        return "falling"
    return "stable"


def _communication_records(records: Iterable[MetadataRecord]) -> List[MetadataRecord]:
    return [r for r in records if r.metadata_type == MetadataType.COMMUNICATION.value]


def analyze_channel_participation(records: Iterable[MetadataRecord]) -> List[Dict[str, Any]]:
    """Per-channel message volume, participants, response gaps and participation trend."""
    channels: Dict[str, List[MetadataRecord]] = defaultdict(list)
    for record in _communication_records(records):
        if record.event_type != "message":
            continue
        channel_id = record.payload.get("channel_id")
        if channel_id:
            channels[channel_id].append(record)

    analysis = []
    for channel_id, messages in channels.items():
        messages.sort(key=lambda r: r.timestamp)

        daily_participants: Dict[str, set] = defaultdict(set)
        for message in messages:
            daily_participants[message.timestamp.date().isoformat()].add(message.payload.get("user_id"))
        days = sorted(daily_participants)
        participants_per_day = [float(len(daily_participants[day])) for day in days]

        gaps = []
        for previous, current in zip(messages, messages[1:]):
            gap_hours = (current.timestamp - previous.timestamp).total_seconds() / 3600
            if gap_hours > RESPONSE_GAP_HOURS:
                gaps.append(gap_hours)

        analysis.append({
            "channel_id": channel_id,
            "message_count": len(messages),
            "unique_participants": len({m.payload.get("user_id") for m in messages}),
            "active_days": len(days),
            "average_participants_per_day": round(sum(participants_per_day) / len(days), 2),
            "participation_trend": _trend(participants_per_day, PARTICIPATION_TREND_THRESHOLD_PCT),
            "response_gaps": len(gaps),
            "average_response_gap_hours": round(sum(gaps) / len(gaps), 2) if gaps else 0.0,
            "max_response_gap_hours": round(max(gaps), 2) if gaps else 0.0,
        })
    return analysis


def analyze_emoji_trends(records: Iterable[MetadataRecord]) -> Optional[Dict[str, Any]]:
    """Reaction totals per emoji plus daily emoji and reaction trends; None without messages or reactions."""
    daily: Dict[str, Dict[str, int]] = defaultdict(lambda: {"messages": 0, "with_emoji": 0, "reactions": 0})
    reaction_totals: Dict[str, int] = defaultdict(int)

    for record in _communication_records(records):
        day = record.timestamp.date().isoformat()
        if record.event_type == "message":
            daily[day]["messages"] += 1
            if record.payload.get("has_emoji"):
                daily[day]["with_emoji"] += 1
        elif record.event_type == "reaction" and not record.payload.get("removed"):
            daily[day]["reactions"] += 1
            reaction = record.payload.get("reaction")
            if reaction:
                reaction_totals[reaction] += 1

    if not daily:
        return None

    days = sorted(daily)
    emoji_ratio = []
    reactions_per_message = []
    for day in days:
        counts = daily[day]
        messages = counts["messages"]
        emoji_ratio.append((counts["with_emoji"] + counts["reactions"]) / messages if messages else 0.0)
        reactions_per_message.append(counts["reactions"] / messages if messages else 0.0)

    return {
        "reaction_totals": dict(sorted(reaction_totals.items(), key=lambda kv: kv[1], reverse=True)),
        "active_days": len(days),
        "emoji_usage_trend": _trend(emoji_ratio, EMOJI_TREND_THRESHOLD_PCT),
        "reaction_trend": _trend(reactions_per_message, EMOJI_TREND_THRESHOLD_PCT),
        "overall_emoji_ratio": round(sum(emoji_ratio) / len(days), 3),
        "overall_reactions_per_message": round(sum(reactions_per_message) / len(days), 3),
    }


def build_enrichment_records(tenant_id: str, records: List[MetadataRecord]) -> List[MetadataRecord]:
    """Derived ``channel_activity`` and ``emoji_usage`` records for the batch."""
    derived: List[MetadataRecord] = []
    if not records:
        return derived
    latest = max(r.timestamp for r in records)

    for channel in analyze_channel_participation(records):
        derived.append(MetadataRecord(
            tenant_id=tenant_id,
            source_integration="whispr",
            event_type="channel_participation_summary",
            metadata_type=MetadataType.CHANNEL_ACTIVITY.value,
            timestamp=latest,
            processing_status=ProcessingStatus.SKIPPED,
            payload=channel,
        ))

    emoji = analyze_emoji_trends(records)
    if emoji is not None:
        derived.append(MetadataRecord(
            tenant_id=tenant_id,
            source_integration="whispr",
            event_type="emoji_trend_summary",
            metadata_type=MetadataType.EMOJI_USAGE.value,
            timestamp=latest,
            processing_status=ProcessingStatus.SKIPPED,
            payload=emoji,
        ))
    return derived
