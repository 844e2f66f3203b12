"""
Organization Configuration

Per-organization Linear connection, stored in Redis under
`linear:org:{slug}:config`:
- access token used to act against the organization's workspace
- the initiative that scopes which projects are job postings (ATS container)

Token refresh is owned by the OAuth flow, not by this service; the stored
token is used as is.
"""
import json
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from hireloop.core.redis import get_redis

logger = logging.getLogger(__name__)


@dataclass
class OrganizationAccount:
    """One connected Linear organization."""
    access_token: str
    org_id: str
    org_slug: str
    org_name: str = ""
    ats_container_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, slug: str, data: Dict[str, Any]) -> "OrganizationAccount":
        # Accepts the camelCase layout written by the dashboard as well
        return cls(
            access_token=data.get("access_token") or data.get("accessToken", ""),
            org_id=data.get("org_id") or data.get("orgId", ""),
            org_slug=data.get("org_slug") or slug,
            org_name=data.get("org_name") or data.get("orgName", ""),
            ats_container_id=(
                data.get("ats_container_id") or data.get("atsContainerInitiativeId")
            ),
        )


def org_config_key(slug: str) -> str:
    return f"linear:org:{slug}:config"


class OrgConfigStore:
    """Reads and writes organization accounts in Redis."""

    def __init__(self, redis=None):
        self._redis = redis

    @property
    def redis(self):
        return self._redis if self._redis is not None else get_redis()

    async def get(self, slug: str) -> Optional[OrganizationAccount]:
        raw = await self.redis.get(org_config_key(slug))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.error(f"Corrupt org config for {slug}")
            return None
        return OrganizationAccount.from_dict(slug, data)

    async def save(self, account: OrganizationAccount) -> None:
        await self.redis.set(org_config_key(account.org_slug), json.dumps(account.to_dict()))
        logger.info(f"Saved org config for {account.org_slug}")

    async def delete(self, slug: str) -> None:
        await self.redis.delete(org_config_key(slug))

    async def exists(self, slug: str) -> bool:
        return bool(await self.redis.exists(org_config_key(slug)))


_store: Optional[OrgConfigStore] = None


def get_org_config_store() -> OrgConfigStore:
    """Get the org config store singleton."""
    global _store
    if _store is None:
        _store = OrgConfigStore()
    return _store
