"""
Service Configuration

Centralizes environment-driven settings for every external integration:
- Linear (record store + webhooks)
- Polar (billing meters and benefits)
- Resend (transactional email)
- LLM inference (screening, conversation pointers)
- Redis (org config, meter reservations, interview sessions)
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional


def _env(key: str, default: str = "") -> str:
    return str(os.getenv(key, default) or default).strip()


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default) or default)
    except (TypeError, ValueError):
        return default


# Free tier caps used while the billing provider is unreachable.
FREE_TIER_LIMITS: Dict[str, int] = {
    "job_descriptions": 3,
    "candidate_screenings": 10,
}


@dataclass
class Settings:
    """Runtime settings resolved from the environment."""

    # Linear
    linear_api_url: str = "https://api.linear.app/graphql"
    linear_webhook_secret: str = ""

    # Polar
    polar_api_url: str = "https://api.polar.sh/v1"
    polar_access_token: str = ""
    meter_ids: Dict[str, str] = field(default_factory=dict)
    email_communication_benefit_id: str = ""
    ai_screening_benefit_id: str = ""

    # Resend
    resend_api_url: str = "https://api.resend.com"
    resend_api_key: str = ""
    resend_from_email: str = "hiring@example.com"
    resend_reply_domain: str = "replies.example.com"
    resend_webhook_secret: str = ""
    template_ids: Dict[str, str] = field(default_factory=dict)

    # LLM
    llm_api_url: str = "https://api.cerebras.ai/v1/chat/completions"
    llm_api_key: str = ""
    llm_model: str = "llama-3.3-70b"

    # Infra
    redis_url: str = "redis://localhost:6379/0"
    app_url: str = "http://localhost:8000"
    admin_alert_webhook_url: str = ""
    interview_session_ttl_seconds: int = 7 * 24 * 60 * 60
    webhook_max_skew_seconds: int = 300

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            linear_api_url=_env("LINEAR_API_URL", "https://api.linear.app/graphql"),
            linear_webhook_secret=_env("LINEAR_WEBHOOK_SECRET"),
            polar_api_url=_env("POLAR_API_URL", "https://api.polar.sh/v1"),
            polar_access_token=_env("POLAR_ACCESS_TOKEN"),
            meter_ids={
                "job_descriptions": _env("POLAR_JOB_DESCRIPTIONS_METER_ID"),
                "candidate_screenings": _env("POLAR_CANDIDATE_SCREENINGS_METER_ID"),
            },
            email_communication_benefit_id=_env("POLAR_EMAIL_COMMUNICATION_BENEFIT_ID"),
            ai_screening_benefit_id=_env("POLAR_AI_SCREENING_BENEFIT_ID"),
            resend_api_url=_env("RESEND_API_URL", "https://api.resend.com"),
            resend_api_key=_env("RESEND_API_KEY"),
            resend_from_email=_env("RESEND_FROM_EMAIL", "hiring@example.com"),
            resend_reply_domain=_env("RESEND_REPLY_DOMAIN", "replies.example.com"),
            resend_webhook_secret=_env("RESEND_WEBHOOK_SECRET"),
            template_ids={
                "confirmation": _env("RESEND_TEMPLATE_CONFIRMATION"),
                "rejection": _env("RESEND_TEMPLATE_REJECTION"),
                "screening_invitation": _env("RESEND_TEMPLATE_SCREENING_INVITATION"),
                "comment": _env("RESEND_TEMPLATE_COMMENT"),
            },
            llm_api_url=_env("LLM_API_URL", "https://api.cerebras.ai/v1/chat/completions"),
            llm_api_key=_env("LLM_API_KEY"),
            llm_model=_env("LLM_MODEL", "llama-3.3-70b"),
            redis_url=_env("REDIS_URL", "redis://localhost:6379/0"),
            app_url=_env("APP_URL", "http://localhost:8000").rstrip("/"),
            admin_alert_webhook_url=_env("ADMIN_ALERT_WEBHOOK_URL"),
            interview_session_ttl_seconds=_env_int("INTERVIEW_SESSION_TTL_SECONDS", 7 * 24 * 60 * 60),
            webhook_max_skew_seconds=_env_int("WEBHOOK_MAX_SKEW_SECONDS", 300),
        )

    def meter_id(self, meter_name: str) -> str:
        return self.meter_ids.get(meter_name, "")


REQUIRED_ENV_VARS = [
    "LINEAR_WEBHOOK_SECRET",
    "POLAR_ACCESS_TOKEN",
    "RESEND_API_KEY",
    "LLM_API_KEY",
    "REDIS_URL",
]


def validate_config() -> Dict[str, object]:
    """Report required environment variables that are not set."""
    missing: List[str] = [key for key in REQUIRED_ENV_VARS if not os.getenv(key)]
    return {"valid": not missing, "missing": missing}


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
