"""
Pytest configuration and shared fixtures for contact enrichment tests.

Test Categories:
- unit: Fast tests with no external dependencies
- slow: Tests that start the FastAPI app through TestClient
- integration: Tests requiring a running tool service or real LLM keys

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not slow"        # Skip slow tests
- pytest -m "not integration" # Skip integration tests
- pytest                      # All tests
"""
import pytest

from fakes import FakeClock, FakeGateway
from api.services.agent_loop import AgentConfig
from api.services.identifier_extractor import DetectedFields
from api.services.resilience import RateLimitPolicy


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "slow: Slow tests (app startup)")
    config.addinivalue_line("markers", "integration: Integration tests (tool service or LLM required)")


@pytest.fixture
def gateway():
    """Tool gateway double with no handlers; tests add them per tool."""
    return FakeGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def agent_config():
    """Agent configuration with production limits and no real waiting."""
    return AgentConfig(
        tool_model="claude-haiku-4-5",
        final_model="claude-sonnet-4-5",
        rate_limit=RateLimitPolicy(min_interval=0.0),
        tool_call_delay_seconds=0.0,
    )


@pytest.fixture
def email_fields():
    return DetectedFields(emails="Email")


@pytest.fixture(scope="function")
def mock_settings(monkeypatch):
    """
    Settings for testing.

    Points at a fake tool service and uses placeholder keys; nothing is contacted.
    """
    from config.settings import Settings

    mock = Settings(
        ANTHROPIC_API_KEY="test-key-for-testing",
        MCP_SERVER_URL="http://tool-service.test/mcp",
        ENRICH_MIN_CALL_INTERVAL=0.0,
        ENRICH_TOOL_CALL_DELAY=0.0,
    )

    # Patch the global settings
    monkeypatch.setattr("config.settings.settings", mock)
    return mock


def pytest_collection_modifyitems(config, items):
    """Auto-mark integration tests by name."""
    for item in items:
        if "integration" in item.name or "real_" in item.name:
            item.add_marker(pytest.mark.integration)
