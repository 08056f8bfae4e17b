"""Root conftest: session-scoped Redis fixture and shared test doubles.

A Redis 7 container is started once per session, unless
``MEMREFINE_TEST_REDIS_URL`` points at an existing server.  Only tests that
request ``redis_client`` (directly or through ``store``/``audit``) need it;
pure unit tests run without Docker.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path

import pytest
import redis as sync_redis
from dotenv import load_dotenv
from redis.asyncio import Redis

from memrefine.audit import AuditLog
from memrefine.config import RefinementConfig
from memrefine.engine import RefinementTool
from memrefine.memory import MemoryStore

logger = logging.getLogger(__name__)

# Load repository-root .env for test opt-ins (existing env vars stay authoritative).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env", override=False)

TEST_PREFIX = "memrefine-test"


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Attach suite markers from test path.

    - `tests/unit/*` -> `unit`
    - `tests/integration/*` -> `integration`
    """
    root = Path(__file__).resolve().parents[1]
    for item in items:
        item_path = Path(str(item.fspath)).resolve()
        try:
            rel = item_path.relative_to(root)
        except ValueError:
            continue

        parts = rel.parts
        if len(parts) < 2 or parts[0] != "tests":
            continue
        if parts[1] == "unit":
            item.add_marker(pytest.mark.unit)
        elif parts[1] == "integration":
            item.add_marker(pytest.mark.integration)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


def _wait_for_redis(url: str) -> None:
    r = sync_redis.Redis.from_url(url)
    max_attempts = 30
    for attempt in range(max_attempts):
        try:
            r.ping()
            r.close()
            return
        except Exception as exc:
            if attempt == max_attempts - 1:
                r.close()
                raise
            logger.debug(
                "Redis not ready (attempt %d/%d): %s",
                attempt + 1,
                max_attempts,
                exc,
            )
            time.sleep(1)


@pytest.fixture(scope="session")
def redis_container():
    """Yield the URL of a Redis server for the whole test session."""
    external = os.environ.get("MEMREFINE_TEST_REDIS_URL")
    if external:
        _wait_for_redis(external)
        yield external
        return

    from testcontainers.core.container import DockerContainer

    container = DockerContainer("redis:7-alpine").with_exposed_ports(6379)
    with container as c:
        host = c.get_container_host_ip()
        port = c.get_exposed_port(6379)
        url = f"redis://{host}:{port}"
        _wait_for_redis(url)
        yield url


@pytest.fixture()
async def redis_client(redis_container):
    """Yield an async Redis client; the database is flushed around each test."""
    client = Redis.from_url(redis_container)
    await client.flushdb()
    yield client
    await client.flushdb()
    await client.aclose()


@pytest.fixture()
def refinement_config() -> RefinementConfig:
    return RefinementConfig()


@pytest.fixture()
def store(redis_client, refinement_config) -> MemoryStore:
    return MemoryStore(redis_client, config=refinement_config, key_prefix=TEST_PREFIX)


@pytest.fixture()
def audit(redis_client) -> AuditLog:
    return AuditLog(redis_client, key_prefix=TEST_PREFIX)


# ---------------------------------------------------------------------------
# Reasoning loop doubles
# ---------------------------------------------------------------------------


class ScriptedReasoningLoop:
    """Replays a fixed list of steps against the tool.

    Each step is either an ``(action, params)`` pair or an async callable
    taking the tool.  Results are collected in ``results``.
    """

    def __init__(self, steps: list, *, consent: bool = True) -> None:
        self.steps = steps
        self.consent = consent
        self.results: list[dict] = []
        self.briefings: list[str] = []
        self.consent_prompts: list[str] = []

    async def consents(self, prompt: str) -> bool:
        self.consent_prompts.append(prompt)
        return self.consent

    async def run(self, briefing: str, tool: RefinementTool) -> None:
        self.briefings.append(briefing)
        for step in self.steps:
            if callable(step):
                result = await step(tool)
            else:
                action, params = step
                result = await tool.execute(action, params)
            self.results.append(result)


@pytest.fixture()
def scripted_loop():
    """Factory fixture building ``ScriptedReasoningLoop`` instances."""
    return ScriptedReasoningLoop
