"""
AI screening interview sessions.

A session is an unguessable secret that maps, in Redis, to everything the
interview page needs (candidate, company, job description, application and
conversation pointers). The candidate receives `{APP_URL}/interview/{secret}`.
"""
import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from hireloop.core.config import get_settings
from hireloop.core.redis import get_redis

logger = logging.getLogger(__name__)


@dataclass
class ScreeningSession:
    linear_org: str
    issue_id: str
    candidate_name: str
    candidate_email: str
    company_name: str
    job_description: str
    candidate_application: str
    conversation_pointers: str
    created_at: float = 0.0


def session_key(secret: str) -> str:
    return f"screening:session:{secret}"


def session_link(secret: str, app_url: Optional[str] = None) -> str:
    base = (app_url or get_settings().app_url).rstrip("/")
    return f"{base}/interview/{secret}"


async def create_screening_session(session: ScreeningSession, redis=None, ttl_seconds: Optional[int] = None) -> str:
    """Store `session` under a new secret and return the secret."""
    redis = redis if redis is not None else get_redis()
    ttl = ttl_seconds or get_settings().interview_session_ttl_seconds
    secret = secrets.token_urlsafe(32)
    session.created_at = session.created_at or time.time()
    await redis.set(session_key(secret), json.dumps(asdict(session)), ex=ttl)
    logger.info(f"Created screening session {secret[:8]}... for issue {session.issue_id}")
    return secret


async def get_screening_session(secret: str, redis=None) -> Optional[ScreeningSession]:
    redis = redis if redis is not None else get_redis()
    raw = await redis.get(session_key(secret))
    if not raw:
        return None
    data: Dict[str, Any] = json.loads(raw)
    return ScreeningSession(**data)
