"""Tests for stage response parsing."""

import json

import pytest

from whispr.common_tools.errors import AnalysisResponseError
from whispr.pipeline_agent.stages import (
    STAGE_CATALOGUE,
    AnomalyReport,
    PatternAnalysis,
    WhisperBatch,
    get_stage_definition,
    parse_stage_response,
    strip_code_fence,
)


class TestStageCatalogue:

    def test_every_default_stage_has_a_definition(self):
        assert set(STAGE_CATALOGUE) == {"pulse", "intel", "sentinel", "whispr"}

    def test_response_models(self):
        assert get_stage_definition("pulse").response_model is PatternAnalysis
        assert get_stage_definition("sentinel").response_model is AnomalyReport
        assert get_stage_definition("whispr").response_model is WhisperBatch

    def test_unknown_stage(self):
        with pytest.raises(KeyError):
            get_stage_definition("missing")


class TestParseStageResponse:

    def test_plain_json(self):
        raw = json.dumps({"patterns": [{"type": "late_replies", "confidence": 0.7}]})

        result = parse_stage_response("pulse", raw, PatternAnalysis)

        assert result["patterns"][0]["type"] == "late_replies"
        assert result["insights"] == []

    def test_code_fenced_json(self):
        raw = "```json\n{\"anomalies\": []}\n```"

        assert strip_code_fence(raw) == "{\"anomalies\": []}"
        assert parse_stage_response("sentinel", raw, AnomalyReport) == {"anomalies": []}

    def test_camel_case_aliases_accepted(self):
        raw = json.dumps({"whispers": [{
            "title": "Quiet hours",
            "priority": 2,
            "content": {"message": "m", "suggestedActions": ["a", "b"]},
        }]})

        result = parse_stage_response("whispr", raw, WhisperBatch)

        whisper = result["whispers"][0]
        assert whisper["content"]["suggested_actions"] == ["a", "b"]
        assert whisper["category"] == "improvement"

    def test_extra_fields_are_kept(self):
        raw = json.dumps({"patterns": [], "summary": "calm week"})

        assert parse_stage_response("pulse", raw, PatternAnalysis)["summary"] == "calm week"

    @pytest.mark.parametrize("raw", ["", "   ", "I could not find any patterns.", "[1, 2, 3]"])
    def test_unusable_text_rejected(self, raw):
        with pytest.raises(AnalysisResponseError) as exc_info:
            parse_stage_response("pulse", raw, PatternAnalysis)

        assert exc_info.value.stage_id == "pulse"

    def test_schema_violation_rejected(self):
        raw = json.dumps({"whispers": [{"title": "t", "priority": 9}]})

        with pytest.raises(AnalysisResponseError, match="WhisperBatch"):
            parse_stage_response("whispr", raw, WhisperBatch)

    def test_missing_required_list_rejected(self):
        with pytest.raises(AnalysisResponseError):
            parse_stage_response("pulse", json.dumps({"insights": []}), PatternAnalysis)

    def test_raw_response_preserved_on_error(self):
        with pytest.raises(AnalysisResponseError) as exc_info:
            parse_stage_response("pulse", "not json", PatternAnalysis)

        assert exc_info.value.raw_response == "not json"
