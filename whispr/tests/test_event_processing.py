"""Tests for signature checks, privacy-scrubbing extraction, type derivation and enrichment."""

from datetime import datetime, timedelta, timezone

import pytest

from whispr.common_tools.errors import SignatureVerificationError
from whispr.common_tools.models import MetadataRecord, ProcessingStatus
from whispr.ingestion_agent.analyzers import (
    analyze_channel_participation,
    analyze_emoji_trends,
    build_enrichment_records,
)
from whispr.ingestion_agent.event_extraction import (
    extract_github_metadata,
    extract_slack_metadata,
    time_category,
)
from whispr.ingestion_agent.metadata_typing import available_types_for, derive_metadata_type
from whispr.ingestion_agent.signatures import (
    compute_github_signature,
    compute_slack_signature,
    verify_github_signature,
    verify_slack_signature,
)

from whispr_test_utils import TENANT_ID, communication_records

NOW = 1_709_550_000


class TestSlackSignature:

    def test_valid_signature(self):
        body = b'{"type":"event_callback"}'
        signature = compute_slack_signature("secret", str(NOW), body)

        verify_slack_signature("secret", str(NOW), body, signature, now=NOW + 10)

    def test_tampered_body(self):
        signature = compute_slack_signature("secret", str(NOW), b"original")

        with pytest.raises(SignatureVerificationError, match="mismatch"):
            verify_slack_signature("secret", str(NOW), b"tampered", signature, now=NOW)

    def test_stale_request_is_a_replay(self):
        signature = compute_slack_signature("secret", str(NOW), b"{}")

        with pytest.raises(SignatureVerificationError, match="replay"):
            verify_slack_signature("secret", str(NOW), b"{}", signature, now=NOW + 301)

    @pytest.mark.parametrize("secret,timestamp,signature", [
        (None, str(NOW), "v0=abc"),
        ("secret", None, "v0=abc"),
        ("secret", str(NOW), None),
        ("secret", "yesterday", "v0=abc"),
    ])
    def test_missing_or_malformed_inputs(self, secret, timestamp, signature):
        with pytest.raises(SignatureVerificationError):
            verify_slack_signature(secret, timestamp, b"{}", signature, now=NOW)


class TestGithubSignature:

    def test_valid_signature(self):
        body = b'{"action":"opened"}'

        verify_github_signature("secret", body, compute_github_signature("secret", body))

    def test_wrong_secret(self):
        body = b"{}"

        with pytest.raises(SignatureVerificationError):
            verify_github_signature("secret", body, compute_github_signature("other", body))

    def test_legacy_sha1_header_rejected(self):
        with pytest.raises(SignatureVerificationError, match="malformed"):
            verify_github_signature("secret", b"{}", "sha1=deadbeef")


class TestMetadataTyping:

    @pytest.mark.parametrize("source,event,expected", [
        ("slack", "message", "communication_metadata"),
        ("slack", "reaction", "communication_metadata"),
        ("github", "push", "commit_activity"),
        ("github", "commit_comment", "commit_activity"),
        ("github", "pull_request", "pr_lifecycle"),
        ("github", "pull_request_review", "code_review"),
        ("github", "issues", "issue_tracking"),
        ("github", "release", "development_activity"),
        ("Jira", "issue_created", "jira_activity"),
    ])
    def test_derive_metadata_type(self, source, event, expected):
        assert derive_metadata_type(source, event) == expected

    def test_available_types_for_integrations(self):
        types = available_types_for(["Slack", "unknown"])

        assert "communication_metadata" in types
        assert "commit_activity" not in types
        assert available_types_for([]) == set()


class TestSlackExtraction:

    def test_message_keeps_structure_not_text(self):
        record = extract_slack_metadata(TENANT_ID, {
            "event_id": "Ev1",
            "event": {
                "type": "message", "channel": "C1", "user": "U1",
                "text": "Deploy is broken again :fire: <@U2> <@U3>",
                "ts": "1709550000.0001", "thread_ts": "1709540000.0001",
            },
        })

        assert record.id == "slack_Ev1"
        assert record.payload["message_length"] == len("Deploy is broken again :fire: <@U2> <@U3>")
        assert record.payload["has_emoji"] is True
        assert record.payload["mention_count"] == 2
        assert record.payload["is_thread_reply"] is True
        assert "Deploy" not in record.to_json()

    @pytest.mark.parametrize("event", [
        {"type": "message", "subtype": "bot_message", "text": "beep"},
        {"type": "message", "bot_id": "B1", "text": "beep"},
        {"type": "channel_created"},
    ])
    def test_non_team_activity_ignored(self, event):
        assert extract_slack_metadata(TENANT_ID, {"event": event}) is None

    def test_reaction_event(self):
        record = extract_slack_metadata(TENANT_ID, {"event": {
            "type": "reaction_removed", "user": "U1", "reaction": "tada",
            "item": {"channel": "C1"}, "event_ts": "1709550000.0",
        }})

        assert record.event_type == "reaction"
        assert record.payload["removed"] is True
        assert record.payload["reaction"] == "tada"

    @pytest.mark.parametrize("hour,category", [(2, "late_night"), (7, "early_morning"), (12, "work_hours"),
                                               (19, "evening"), (23, "late_night")])
    def test_time_category(self, hour, category):
        assert time_category(hour) == category


class TestGithubExtraction:

    def test_pull_request_lifecycle(self):
        [record] = extract_github_metadata(TENANT_ID, "pull_request", {
            "action": "closed",
            "pull_request": {
                "number": 12, "merged": True, "title": "Rewrite billing",
                "body": "Long private description",
                "created_at": "2024-03-01T10:00:00Z", "merged_at": "2024-03-02T16:00:00Z",
                "closed_at": "2024-03-02T16:00:00Z", "updated_at": "2024-03-02T16:00:00Z",
                "additions": 120, "deletions": 30,
            },
        }, delivery_id="abc")

        assert record.id == "github_abc"
        assert record.metadata_type == "pr_lifecycle"
        assert record.payload["hours_to_merge"] == 30.0
        assert record.payload["merged"] is True
        assert record.timestamp == datetime(2024, 3, 2, 16, 0, tzinfo=timezone.utc)
        serialized = record.to_json()
        assert "Rewrite billing" not in serialized
        assert "private description" not in serialized

    def test_unknown_event_yields_generic_record(self):
        [record] = extract_github_metadata(TENANT_ID, "star", {"action": "created"})

        assert record.metadata_type == "development_activity"
        assert record.event_type == "star"


def _messages(per_day, start=datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc), channel="C1",
              reactions_per_day=None):
    records = []
    for day, count in enumerate(per_day):
        for i in range(count):
            records.append(MetadataRecord(
                tenant_id=TENANT_ID, source_integration="slack", event_type="message",
                metadata_type="communication_metadata",
                timestamp=start + timedelta(days=day, minutes=10 * i),
                payload={"channel_id": channel, "user_id": f"U{i}", "has_emoji": False},
            ))
        for i in range((reactions_per_day or [0] * len(per_day))[day]):
            records.append(MetadataRecord(
                tenant_id=TENANT_ID, source_integration="slack", event_type="reaction",
                metadata_type="communication_metadata",
                timestamp=start + timedelta(days=day, minutes=5 * i),
                payload={"channel_id": channel, "user_id": "U9", "reaction": "thumbsup"},
            ))
    return records


class TestAnalyzers:

    def test_rising_participation(self):
        [channel] = analyze_channel_participation(_messages([2, 2, 6, 6]))

        assert channel["participation_trend"] == "rising"
        assert channel["message_count"] == 16
        assert channel["active_days"] == 4

    def test_falling_participation(self):
        [channel] = analyze_channel_participation(_messages([6, 6, 2, 2]))

        assert channel["participation_trend"] == "falling"

    def test_too_few_days_is_stable(self):
        [channel] = analyze_channel_participation(_messages([1, 8]))

        assert channel["participation_trend"] == "stable"

    def test_response_gaps(self):
        [channel] = analyze_channel_participation(_messages([2, 2]))

        assert channel["response_gaps"] == 1
        assert channel["max_response_gap_hours"] > 23

    def test_reaction_trend(self):
        emoji = analyze_emoji_trends(_messages([4, 4, 4, 4], reactions_per_day=[0, 1, 4, 4]))

        assert emoji["reaction_trend"] == "rising"
        assert emoji["reaction_totals"] == {"thumbsup": 9}

    def test_no_communication_records(self):
        assert analyze_emoji_trends([]) is None

    def test_enrichment_records_are_not_pending(self):
        records = communication_records(12)

        derived = build_enrichment_records(TENANT_ID, records)

        assert {r.metadata_type for r in derived} == {"channel_activity", "emoji_usage"}
        assert all(r.processing_status == ProcessingStatus.SKIPPED for r in derived)
        assert all(r.timestamp == max(x.timestamp for x in records) for r in derived)
        assert build_enrichment_records(TENANT_ID, []) == []
