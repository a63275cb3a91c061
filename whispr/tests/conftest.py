"""Pytest configuration for whispr tests."""
import os
import sys

import pytest

# Add project root (two levels up) to Python path for imports
project_root = os.path.abspath(
    os.path.join(os.path.dirname(__file__), '..', '..')
)
sys.path.insert(0, project_root)

# Helpers live next to the tests
sys.path.insert(0, os.path.dirname(__file__))

from whispr_test_utils import RecordingChannel, ScriptedAnalysisClient, build_test_services  # noqa: E402


@pytest.fixture
def analysis_client():
    return ScriptedAnalysisClient()


@pytest.fixture
def delivery_channel():
    return RecordingChannel()


@pytest.fixture
def services(analysis_client, delivery_channel):
    """In-memory service graph with a registered ``acme`` tenant."""
    return build_test_services(analysis_client=analysis_client, delivery_channel=delivery_channel)
