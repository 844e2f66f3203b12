"""
Job description enhancement.

A job posting (project) in the ATS container that carries the `enhance`
label is rewritten by the LLM. The new content and the label swap
(`enhance` -> `ai-generated`) are written in one project update so the
resulting webhook finds no `enhance` label and stops.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from hireloop.core.org_config import OrganizationAccount
from hireloop.services.ai_screening import DEFAULT_TONE_OF_VOICE, ScreeningModel
from hireloop.services.record_store import RecordStore
from hireloop.services.usage_meters import UsageMeterGuard

logger = logging.getLogger(__name__)

ENHANCE_LABEL = "enhance"
AI_GENERATED_LABEL = "ai-generated"
JOB_DESCRIPTION_METER = "job_descriptions"


@dataclass
class PublicationOutcome:
    enhanced: bool
    reason: Optional[str] = None


async def handle_project_change(
    store: RecordStore,
    model: ScreeningModel,
    meters: UsageMeterGuard,
    account: OrganizationAccount,
    project_id: str,
    tone_of_voice: str = DEFAULT_TONE_OF_VOICE,
) -> PublicationOutcome:
    """Enhance the project's job description if it asks for it. Never raises."""
    try:
        return await _enhance(store, model, meters, account, project_id, tone_of_voice)
    except Exception as e:
        logger.error(f"Error handling project change for {project_id}: {e}")
        return PublicationOutcome(enhanced=False, reason="error")


async def _enhance(
    store: RecordStore,
    model: ScreeningModel,
    meters: UsageMeterGuard,
    account: OrganizationAccount,
    project_id: str,
    tone_of_voice: str,
) -> PublicationOutcome:
    project = await store.get_project(project_id)
    if project is None:
        logger.error(f"Project {project_id} not found")
        return PublicationOutcome(enhanced=False, reason="not_found")

    if not account.ats_container_id or account.ats_container_id not in project.initiative_ids:
        logger.info(f"Project {project_id} is outside the ATS container, skipping enhancement")
        return PublicationOutcome(enhanced=False, reason="out_of_scope")

    if ENHANCE_LABEL not in project.label_ids:
        logger.info(f"Project {project_id} has no {ENHANCE_LABEL!r} label, skipping enhancement")
        return PublicationOutcome(enhanced=False, reason="no_enhance_label")

    if not project.content.strip():
        logger.error(f"Project {project_id} has no content to enhance")
        return PublicationOutcome(enhanced=False, reason="no_content")

    check = await meters.check_and_reserve(account.org_id, JOB_DESCRIPTION_METER)
    if not check.allowed:
        logger.warning(f"Insufficient job description balance for {account.org_id}, skipping {project_id}")
        return PublicationOutcome(enhanced=False, reason="meter_denied")

    try:
        content = await model.enhance_job_description(project.content, tone_of_voice)
    except Exception:
        await meters.release(account.org_id, JOB_DESCRIPTION_METER, degraded=check.degraded)
        raise

    ai_generated_id = await store.ensure_project_label(AI_GENERATED_LABEL)
    label_ids = [label_id for name, label_id in project.label_ids.items() if name != ENHANCE_LABEL]
    if ai_generated_id not in label_ids:
        label_ids.append(ai_generated_id)

    await store.update_project(project, content, label_ids)
    await meters.record_usage_event(account.org_id, JOB_DESCRIPTION_METER, {"project_id": project_id})
    logger.info(f"Enhanced job description for project {project_id}")
    return PublicationOutcome(enhanced=True)
