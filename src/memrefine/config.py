"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing; just plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass

ONE_WEEK_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class StoreConfig:
    """Redis connection settings shared by the memory store and audit log."""

    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "memrefine"


@dataclass(frozen=True)
class RefinementConfig:
    """Tuneable parameters for eligibility, sessions, and the circuit breaker."""

    # Eligibility
    core_token_budget: int = 5000
    refinement_interval_seconds: float = ONE_WEEK_SECONDS
    # Record lifecycle
    journal_window_seconds: float = ONE_WEEK_SECONDS
    max_content_length: int = 10_000
    # Owners without an explicit threshold accept any session that does not
    # grow core mass.
    default_threshold: float = 1.0
    # Session driving
    session_timeout_seconds: float = 300.0
    max_concurrent_sessions: int = 4
    require_consent: bool = True


@dataclass(frozen=True)
class LockConfig:
    """Owner-scoped refinement lease settings."""

    ttl_seconds: int = 900
    wait_seconds: float = 0.0
    retry_delay: float = 0.1


@dataclass(frozen=True)
class LLMConfig:
    """LLM provider settings used by the reasoning loop."""

    provider: str = "openai"
    model: str = "gpt-4"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout_seconds: float = 30.0
    max_turns: int = 20
