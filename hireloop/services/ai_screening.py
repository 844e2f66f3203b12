"""
AI screening service.

Three prompts against an OpenAI-compatible chat completions endpoint in
JSON mode:
- score: candidate application vs job description -> ScreeningResult
- generate_pointers: topics for the AI screening interview
- enhance_job_description: rewrite a job posting in the org's tone of voice
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from hireloop.core.config import get_settings
from hireloop.models.screening import ScreeningResult
from hireloop.services.errors import ScreeningError
from hireloop.services.retry import raise_for_status, with_retry

logger = logging.getLogger(__name__)

SCREENING_PROMPT = """You are an expert technical recruiter and candidate screening specialist. Evaluate whether a candidate is a good fit for a specific job opening based on their application and the job description.

Compare the candidate's experience, skills, education and achievements against the required and preferred qualifications of the role.

Determine a confidence level for the match:
- "high": the candidate clearly meets most or all key requirements
- "low": the candidate lacks critical requirements or is clearly misaligned with the role
- "ambiguous": some relevant qualifications but also gaps, or not enough information to decide

List matched criteria and concerns with specific evidence from the application. Be objective.

Respond with ONLY a JSON object:
{
  "confidence": "high" | "low" | "ambiguous",
  "reasoning": "A clear explanation of your assessment",
  "matchedCriteria": ["criterion with evidence", "..."],
  "concerns": ["concern", "..."]
}"""

POINTERS_PROMPT = """You are an expert HR interviewer. Generate 3-5 focused conversation pointers that an AI interviewer should explore during a 10-15 minute preliminary screening call.

Each pointer is one or two sentences, specific to this candidate and role, and aimed at the most important qualifications or at gaps in the candidate's background that need clarification.

Respond with ONLY a JSON object:
{"pointers": ["pointer 1", "pointer 2", "pointer 3"]}"""

ENHANCE_PROMPT = """You are an expert recruiter and copywriter. Rewrite the job description below so it is clear, inclusive and compelling, keeping every factual requirement, benefit and detail. Use markdown headings and bullet lists. Follow this tone of voice:

{tone_of_voice}

Respond with ONLY a JSON object:
{{"content": "the rewritten job description in markdown"}}"""

DEFAULT_TONE_OF_VOICE = (
    "Professional but warm. Speak directly to the candidate as \"you\". "
    "Short sentences, no buzzwords, no exaggerated claims."
)

GENERIC_CONVERSATION_POINTERS = [
    "Discuss the candidate's relevant experience and how it aligns with the role requirements",
    "Explore the candidate's technical skills and competencies mentioned in their application",
    "Assess the candidate's motivation for applying and interest in the position",
    "Clarify any gaps or questions about the candidate's background and qualifications",
]


class ScreeningModel(ABC):
    """AI inference used by the candidate workflow."""

    @abstractmethod
    async def score(self, candidate_text: str, job_text: str) -> ScreeningResult:
        ...

    @abstractmethod
    async def generate_pointers(self, job_text: str, candidate_text: str) -> List[str]:
        ...

    @abstractmethod
    async def enhance_job_description(self, content: str, tone_of_voice: str = DEFAULT_TONE_OF_VOICE) -> str:
        ...


def _parse_llm_json(text: str) -> Dict[str, Any]:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                pass
        raise ScreeningError("LLM response was not valid JSON")


def parse_screening_result(data: Dict[str, Any]) -> ScreeningResult:
    """Validate a screening payload; camelCase keys from the prompt are accepted."""
    try:
        return ScreeningResult(
            confidence=str(data.get("confidence", "")).lower(),
            reasoning=data.get("reasoning") or "No reasoning provided",
            matched_criteria=data.get("matchedCriteria") or data.get("matched_criteria") or [],
            concerns=data.get("concerns") or [],
        )
    except ValidationError as e:
        raise ScreeningError(f"Invalid screening response: {e.errors()[0].get('msg')}") from e


def format_pointers(pointers: List[str]) -> str:
    return "\n".join(f"{index}. {pointer}" for index, pointer in enumerate(pointers, start=1))


def format_reasoning_comment(result: ScreeningResult) -> str:
    """Markdown trace comment for a screening result."""
    lines = [
        "## 🤖 AI Pre-screening Result",
        "",
        f"**Confidence Level:** {result.confidence.value.upper()}",
        "",
        f"**Assessment:** {result.reasoning}",
        "",
    ]
    if result.matched_criteria:
        lines += ["### ✅ Matched Criteria", ""]
        lines += [f"- {criterion}" for criterion in result.matched_criteria]
        lines.append("")
    if result.concerns:
        lines += ["### ⚠️ Concerns", ""]
        lines += [f"- {concern}" for concern in result.concerns]
        lines.append("")
    lines += ["---", "*This assessment was generated automatically by the AI pre-screening agent.*"]
    return "\n".join(lines)


class ChatCompletionScreeningModel(ScreeningModel):
    """ScreeningModel over an OpenAI-compatible /chat/completions endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 60.0,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.llm_api_key
        self.api_url = api_url or settings.llm_api_url
        self.model = model or settings.llm_model
        self.timeout = timeout

    async def _complete_json(self, system: str, user: str, max_tokens: int, temperature: float) -> Dict[str, Any]:
        if not self.api_key:
            raise ScreeningError("LLM API key not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "max_completion_tokens": max_tokens,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        async def _post() -> Dict[str, Any]:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, headers=headers, json=payload)
            raise_for_status("llm", response)
            return response.json()

        data = await with_retry(_post, label="llm")
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ScreeningError("No response content from LLM")
        if not text:
            raise ScreeningError("Empty response from LLM")
        return _parse_llm_json(text.strip())

    async def score(self, candidate_text: str, job_text: str) -> ScreeningResult:
        data = await self._complete_json(
            SCREENING_PROMPT,
            f"Job Description:\n\n{job_text}\n\n---\n\nCandidate CV:\n\n{candidate_text}",
            max_tokens=2048,
            temperature=0.2,
        )
        result = parse_screening_result(data)
        logger.info(f"Screening completed with confidence {result.confidence.value}")
        return result

    async def generate_pointers(self, job_text: str, candidate_text: str) -> List[str]:
        if not job_text.strip() or not candidate_text.strip():
            raise ScreeningError("Job description and candidate application are required")
        data = await self._complete_json(
            POINTERS_PROMPT,
            f"Job Description:\n\n{job_text}\n\n---\n\nCandidate Application:\n\n{candidate_text}",
            max_tokens=1024,
            temperature=0.3,
        )
        pointers = data.get("pointers")
        if not isinstance(pointers, list):
            raise ScreeningError("Invalid response structure: missing pointers array")
        valid = [p.strip() for p in pointers if isinstance(p, str) and p.strip()]
        if not valid:
            raise ScreeningError("No conversation pointers generated")
        return valid

    async def enhance_job_description(self, content: str, tone_of_voice: str = DEFAULT_TONE_OF_VOICE) -> str:
        data = await self._complete_json(
            ENHANCE_PROMPT.format(tone_of_voice=tone_of_voice),
            content,
            max_tokens=4096,
            temperature=0.5,
        )
        enhanced = data.get("content")
        if not isinstance(enhanced, str) or not enhanced.strip():
            raise ScreeningError("AI enhancement returned no content")
        return enhanced.strip()


async def generate_pointers_with_fallback(model: ScreeningModel, job_text: str, candidate_text: str) -> List[str]:
    """Conversation pointers, or generic ones when the model fails."""
    try:
        return await model.generate_pointers(job_text, candidate_text)
    except Exception as e:
        logger.warning(f"Falling back to generic conversation pointers: {e}")
        return list(GENERIC_CONVERSATION_POINTERS)


_model: Optional[ChatCompletionScreeningModel] = None


def get_screening_model() -> ChatCompletionScreeningModel:
    """Get the screening model singleton."""
    global _model
    if _model is None:
        _model = ChatCompletionScreeningModel()
    return _model
