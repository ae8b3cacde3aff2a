"""Configuration via environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class ImapConfig:
    """IMAP connection configuration."""

    host: str
    username: str
    password: str
    port: int = 993
    folder: str = "INBOX"


@dataclass(frozen=True)
class ExtractionSettings:
    """Tunable thresholds and limits for the extraction pipeline.

    Defaults are the production values; ``get_extraction_settings`` overrides
    them from the environment.
    """

    # Routing
    auto_accept_threshold: float = 0.85
    reject_threshold: float = 0.60

    # Preprocessing
    max_body_chars: int = 3000
    max_html_chars: int = 200_000

    # Amount and date plausibility
    min_bill_amount: float = 0.01
    max_bill_amount: float = 10_000.0
    suspicious_no_decimals_above: float = 5000.0
    max_future_days: int = 365
    max_past_days: int = 30

    # Keyword gate
    min_keyword_score: float = 0.15

    # Payment links
    require_https_links: bool = True
    min_link_score: int = 2
    max_link_candidates: int = 10
    link_autofill_threshold: float = 0.80
    single_link_shortcut_score: int = 4

    # Batch processing
    batch_concurrency: int = 5
    batch_delay_seconds: float = 1.0

    # AI calls
    ai_timeout_seconds: float = 30.0
    ai_max_retries: int = 1

    # Duplicate detection
    duplicate_name_distance: int = 3
    duplicate_name_min_length: int = 6

    # Pre-filter: unmatched senders go to the AI by default
    prefilter_pass_unmatched: bool = True

    # Confidence blend
    agreement_bonus: float = 0.05
    mismatch_penalty: float = 0.10
    missing_fields_penalty: float = 0.20
    keyword_signal_bonus: float = 0.05
    strong_keyword_score: float = 0.6


def get_database_url() -> str:
    """Return the DATABASE_URL from the environment."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        msg = "DATABASE_URL environment variable is required"
        raise ValueError(msg)
    return url


def get_imap_config() -> ImapConfig:
    """Build IMAP configuration from environment variables.

    Required: IMAP_HOST, IMAP_USERNAME, IMAP_PASSWORD
    Optional: IMAP_PORT (default 993), IMAP_FOLDER (default INBOX)
    """
    host = os.environ.get("IMAP_HOST")
    username = os.environ.get("IMAP_USERNAME")
    password = os.environ.get("IMAP_PASSWORD")

    missing = []
    if not host:
        missing.append("IMAP_HOST")
    if not username:
        missing.append("IMAP_USERNAME")
    if not password:
        missing.append("IMAP_PASSWORD")

    if missing:
        msg = f"Required environment variables not set: {', '.join(missing)}"
        raise ValueError(msg)

    return ImapConfig(
        host=host,  # type: ignore[arg-type]
        username=username,  # type: ignore[arg-type]
        password=password,  # type: ignore[arg-type]
        port=_env_int("IMAP_PORT", 993),
        folder=os.environ.get("IMAP_FOLDER", "INBOX"),
    )


def get_anthropic_api_key() -> str:
    """Return the ANTHROPIC_API_KEY from the environment."""
    key = os.environ.get("ANTHROPIC_API_KEY")
    if not key:
        msg = "ANTHROPIC_API_KEY environment variable is required"
        raise ValueError(msg)
    return key


def get_llm_model() -> str:
    """Return the LLM model identifier.

    Defaults to claude-haiku-4-5-20251001.
    """
    return os.environ.get("LLM_MODEL", "claude-haiku-4-5-20251001")


def get_extraction_settings() -> ExtractionSettings:
    """Build pipeline settings, overriding defaults from the environment."""
    defaults = ExtractionSettings()
    auto_accept = _env_float("AUTO_ACCEPT_THRESHOLD", defaults.auto_accept_threshold)
    reject = _env_float("REJECT_THRESHOLD", defaults.reject_threshold)
    if not 0.0 <= reject <= auto_accept <= 1.0:
        msg = (
            "REJECT_THRESHOLD and AUTO_ACCEPT_THRESHOLD must satisfy "
            "0 <= REJECT_THRESHOLD <= AUTO_ACCEPT_THRESHOLD <= 1"
        )
        raise ValueError(msg)

    return ExtractionSettings(
        auto_accept_threshold=auto_accept,
        reject_threshold=reject,
        max_body_chars=_env_int("MAX_BODY_CHARS", defaults.max_body_chars),
        max_html_chars=_env_int("MAX_HTML_CHARS", defaults.max_html_chars),
        max_bill_amount=_env_float("MAX_BILL_AMOUNT", defaults.max_bill_amount),
        max_future_days=_env_int("MAX_FUTURE_DAYS", defaults.max_future_days),
        max_past_days=_env_int("MAX_PAST_DAYS", defaults.max_past_days),
        require_https_links=_env_bool(
            "REQUIRE_HTTPS_LINKS", defaults.require_https_links
        ),
        min_link_score=_env_int("MIN_LINK_SCORE", defaults.min_link_score),
        max_link_candidates=_env_int(
            "MAX_LINK_CANDIDATES", defaults.max_link_candidates
        ),
        link_autofill_threshold=_env_float(
            "LINK_AUTOFILL_THRESHOLD", defaults.link_autofill_threshold
        ),
        batch_concurrency=max(1, _env_int("BATCH_CONCURRENCY", defaults.batch_concurrency)),
        batch_delay_seconds=_env_float(
            "BATCH_DELAY_SECONDS", defaults.batch_delay_seconds
        ),
        ai_timeout_seconds=_env_float("AI_TIMEOUT_SECONDS", defaults.ai_timeout_seconds),
        ai_max_retries=_env_int("AI_MAX_RETRIES", defaults.ai_max_retries),
        duplicate_name_distance=_env_int(
            "DUPLICATE_NAME_DISTANCE", defaults.duplicate_name_distance
        ),
        duplicate_name_min_length=_env_int(
            "DUPLICATE_NAME_MIN_LENGTH", defaults.duplicate_name_min_length
        ),
        prefilter_pass_unmatched=_env_bool(
            "PREFILTER_PASS_UNMATCHED", defaults.prefilter_pass_unmatched
        ),
    )


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got {raw!r}"
        raise ValueError(msg) from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        msg = f"{name} must be a number, got {raw!r}"
        raise ValueError(msg) from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"{name} must be a boolean, got {raw!r}"
    raise ValueError(msg)
