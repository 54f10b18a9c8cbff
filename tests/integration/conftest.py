"""Integration test configuration.

Shared fixtures for tests that talk to a running gateway.
All integration tests are marked with ``@pytest.mark.integration``.
Run them with: ``INTEGRATION=1 pytest tests/integration/ -m integration``
"""

import os

import httpx
import pytest

# ── Auto-skip when INTEGRATION env not set ──────────────────────────────────


def pytest_collection_modifyitems(config, items):
    """Auto-skip integration tests when INTEGRATION env var is not set."""
    if os.environ.get("INTEGRATION", "").lower() in ("1", "true", "yes"):
        return
    skip_marker = pytest.mark.skip(reason="Set INTEGRATION=1 to run integration tests with live services")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_marker)


# ── Session-scoped fixtures ─────────────────────────────────────────────────


@pytest.fixture(scope="session")
def gateway_url() -> str:
    """Base URL of the running nutriai-gateway."""
    return os.environ.get("NUTRIAI_GATEWAY_URL", "http://localhost:3001")


@pytest.fixture(scope="session")
def gateway_token() -> str:
    """Shared secret the running gateway was started with."""
    token = os.environ.get("AI_PROXY_AUTH_TOKEN", "")
    if not token:
        pytest.skip("AI_PROXY_AUTH_TOKEN not set")
    return token


@pytest.fixture
async def gateway(gateway_url):
    """HTTP client against the live gateway; skips when it is not reachable."""
    async with httpx.AsyncClient(base_url=gateway_url, timeout=30.0) as client:
        try:
            await client.options("/api/health")
        except httpx.TransportError:
            pytest.skip(f"gateway not reachable at {gateway_url}")
        yield client
