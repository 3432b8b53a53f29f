"""
AI services - the analysis core.

Uses Instructor + Claude for structured output. Every call validates the
model's answer against a pydantic response_model (see schemas.py) so only
typed, coerced values flow into persisted state.

Services:
- analyze_serp_results: themes / sentiment / entities / priority per result
- evaluate_relevance:   off-topic verdicts for the context filter
- group_duplicate_tags: semantic duplicate groups for the tag normalizer
- summarize_scans:      comparative briefing narrative

All services return None after exhausting retries; none of them raise.
Callers own the inter-call delay (settings.ai_call_delay_seconds).
"""

import asyncio
import json
import logging
from typing import List, Optional, Type, TypeVar

import httpx
import instructor
from anthropic import AsyncAnthropic, APITimeoutError, APIError, RateLimitError
from instructor.core import InstructorRetryException
from pydantic import BaseModel

from ..config.settings import settings
from .schemas import (
    BriefingNarrative,
    RelevanceBatch,
    RelevanceVerdict,
    SerpAnalysis,
    TagGroup,
    TagGrouping,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

API_TIMEOUT_SECONDS = settings.llm_timeout
MAX_RETRIES = settings.llm_max_retries

# Excerpts are truncated in prompts; the full excerpt stays in serp_results
PROMPT_EXCERPT_CHARS = 1200

# Initialize Instructor with the async Anthropic client
_anthropic_client = AsyncAnthropic(
    api_key=settings.anthropic_api_key,
    timeout=httpx.Timeout(settings.llm_timeout, connect=settings.llm_connect_timeout),
)
client = instructor.from_anthropic(_anthropic_client)


ANALYSIS_SYSTEM_PROMPT = """You are a brand-monitoring analyst. You receive search results \
(Google organic or Google News) found for a monitored keyword and analyse each one.

For EACH result, keyed by its "position":
1. themes: 2-5 short themes (1-3 words each, lowercase, in the language of the content) \
with a confidence 0.0-1.0. Prefer reusable, general themes ("sostenibilità", "prezzi", \
"intelligenza artificiale") over one-off phrases.
2. sentiment: positive | negative | neutral | mixed, towards the monitored keyword.
3. sentiment_score: -1.0 (very negative) to 1.0 (very positive). Must agree with sentiment.
4. entities: named entities with type brand | person | product | technology | location.
5. summary: one factual sentence.
6. is_competitor: true if the result's domain appears to belong to a competitor in the \
given industry.
7. is_hi_priority / priority_reason: see the ALERT KEYWORDS section of the request.

At the root, list in discovered_competitors the hostnames (no www) you judge to be \
competitors in the industry, even if they are not in the known competitor list.

Never invent results. Return exactly one entry per input position."""

CACHED_SYSTEM_MESSAGE = [
    {
        "type": "text",
        "text": ANALYSIS_SYSTEM_PROMPT,
        "cache_control": {"type": "ephemeral"},
    }
]

RELEVANCE_SYSTEM_PROMPT = """You review analysed search results for a brand-monitoring \
project and decide, for each one, whether it is OFF-TOPIC for the project.

A result is off-topic when it is about a different meaning of the keyword, an unrelated \
company or person with a similar name, or content with no connection to the project's \
industry, brand, products or competitors. Results that mention the brand, its market, \
its competitors or its industry are relevant even if the tone is negative.

Return one verdict per input id with a short reason (max one sentence)."""

GROUPING_SYSTEM_PROMPT = """You normalize a taxonomy of theme tags for a brand-monitoring \
project. Find groups of tags that mean the same thing: synonyms, translations, \
abbreviations, singular/plural or spelling variants (e.g. "intelligenza artificiale", \
"ai", "ia").

Rules:
- canonical MUST be one of the input tag names, preferably the most used one.
- duplicates MUST be input tag names, different from canonical.
- Do not group tags that are merely related ("prezzi" and "offerte" are different).
- Tags with no equivalents must not appear in any group."""

BRIEFING_SYSTEM_PROMPT = """You write executive briefings for a brand-monitoring \
dashboard. Compare the latest scan with the previous one and write 3-5 sentences: what \
changed in volume, sentiment, dominant themes and competitor presence, and what deserves \
attention. Be concrete, cite numbers, no bullet points, no preamble. Write in the \
project's language."""


async def _call_llm(
    prompt: str,
    response_model: Type[ModelT],
    label: str,
    system=None,
    temperature: Optional[float] = None,
) -> Optional[ModelT]:
    """
    Run one structured completion with retry/backoff.

    Args:
        prompt: User message
        response_model: Pydantic model Instructor validates against
        label: Short name for logs (e.g. "analysis", "relevance")
        system: System prompt (str or cached content blocks)
        temperature: Overrides settings.llm_temperature

    Returns:
        Validated response_model instance, or None after all attempts fail
    """
    last_error: Optional[Exception] = None

    for attempt in range(MAX_RETRIES + 1):
        try:
            response, completion = await client.messages.create_with_completion(
                model=settings.llm_model,
                max_tokens=settings.llm_max_tokens,
                temperature=settings.llm_temperature if temperature is None else temperature,
                system=system or [],
                messages=[{"role": "user", "content": prompt}],
                response_model=response_model,
            )

            if completion is not None and hasattr(completion, "usage"):
                usage = completion.usage
                logger.debug(
                    f"Claude {label} tokens: in={usage.input_tokens}, out={usage.output_tokens}"
                )
            return response

        except APITimeoutError as e:
            last_error = e
            backoff = 2 ** attempt
            logger.warning(
                f"Claude API timeout on {label} (attempt {attempt + 1}/{MAX_RETRIES + 1}, "
                f"prompt_len={len(prompt)}, backoff={backoff}s)"
            )
            if attempt < MAX_RETRIES:
                await asyncio.sleep(backoff)
            continue

        except RateLimitError as e:
            last_error = e
            backoff = 10 * (attempt + 1)
            logger.warning(
                f"Claude API rate limit on {label} (attempt {attempt + 1}/{MAX_RETRIES + 1}, "
                f"backoff={backoff}s): {e}"
            )
            if attempt < MAX_RETRIES:
                await asyncio.sleep(backoff)
            continue

        except APIError as e:
            last_error = e
            logger.error(f"Claude API error on {label} (attempt {attempt + 1}/{MAX_RETRIES + 1}): {e}")
            status_code = getattr(e, "status_code", None) or 0
            if attempt < MAX_RETRIES and status_code >= 500:
                await asyncio.sleep(2 ** attempt)
                continue
            break

        except InstructorRetryException as e:
            # Model kept returning output that fails validation
            last_error = e
            logger.warning(f"Claude {label} output failed validation: {e}")
            break

        except Exception as e:
            logger.error(f"Unexpected error during {label}: {type(e).__name__}: {e}", exc_info=True)
            return None

    logger.error(
        f"Claude {label} failed after {MAX_RETRIES + 1} attempts: "
        f"{type(last_error).__name__}: {last_error}"
    )
    return None


def build_analysis_prompt(
    keyword: str,
    industry: str,
    alert_keywords: List[str],
    competitors: List[str],
    items: List[dict],
) -> str:
    """Build the per-job analysis request."""
    if alert_keywords:
        alert_block = (
            "ALERT KEYWORDS: " + json.dumps(alert_keywords, ensure_ascii=False) + "\n"
            "Set is_hi_priority=true when the content mentions or is semantically related to one "
            "of them (synonyms and indirect references count) and explain in priority_reason "
            "which one matched. Otherwise is_hi_priority=false and priority_reason=null."
        )
    else:
        alert_block = "ALERT KEYWORDS: none configured. is_hi_priority is always false."

    payload = [
        {
            "position": item["position"],
            "title": item.get("title", ""),
            "url": item.get("url", ""),
            "snippet": item.get("snippet", ""),
            "excerpt": (item.get("excerpt") or "")[:PROMPT_EXCERPT_CHARS],
        }
        for item in items
    ]

    return (
        f"KEYWORD: {keyword}\n"
        f"INDUSTRY: {industry or 'not specified'}\n"
        f"KNOWN COMPETITORS: {json.dumps(competitors, ensure_ascii=False)}\n"
        f"{alert_block}\n\n"
        f"RESULTS:\n{json.dumps(payload, ensure_ascii=False, indent=1)}"
    )


async def analyze_serp_results(
    keyword: str,
    industry: str,
    alert_keywords: List[str],
    competitors: List[str],
    items: List[dict],
) -> Optional[SerpAnalysis]:
    """
    Analyse all results of one job in a single call.

    Args:
        keyword: The monitored keyword the results were found for
        industry: Project industry (competitor judgement context)
        alert_keywords: Project alert keywords driving is_hi_priority
        competitors: Known competitor domains
        items: [{position, title, url, snippet, excerpt}]

    Returns:
        SerpAnalysis, or None if the service failed
    """
    if not items:
        return SerpAnalysis()

    prompt = build_analysis_prompt(keyword, industry, alert_keywords, competitors, items)
    analysis = await _call_llm(prompt, SerpAnalysis, "analysis", system=CACHED_SYSTEM_MESSAGE)
    if analysis is not None:
        logger.info(
            f"Analysed {len(analysis.results)}/{len(items)} results for '{keyword}' "
            f"({len(analysis.discovered_competitors)} competitor domains discovered)"
        )
    return analysis


def format_project_context(project_context: dict) -> str:
    """Render {name, industry, keywords, competitors, description} for prompts."""
    lines = [
        f"PROJECT: {project_context.get('name', '')}",
        f"INDUSTRY: {project_context.get('industry') or 'not specified'}",
        f"KEYWORDS: {json.dumps(project_context.get('keywords') or [], ensure_ascii=False)}",
        f"COMPETITORS: {json.dumps(project_context.get('competitors') or [], ensure_ascii=False)}",
    ]
    description = project_context.get("description")
    if description:
        lines.append(f'CONTEXT PROVIDED BY THE CLIENT:\n"""{description}"""')
    return "\n".join(lines)


async def evaluate_relevance(
    project_context: dict,
    items: List[dict],
) -> Optional[List[RelevanceVerdict]]:
    """
    Off-topic verdicts for a batch of analysed results.

    Args:
        project_context: {name, industry, keywords, competitors, description}
        items: [{id, title, url, snippet, summary, themes}]

    Returns:
        Verdicts (only for ids present in items), or None if the service failed
    """
    if not items:
        return []

    prompt = (
        f"{format_project_context(project_context)}\n\n"
        f"RESULTS TO EVALUATE:\n{json.dumps(items, ensure_ascii=False, indent=1)}"
    )
    batch = await _call_llm(prompt, RelevanceBatch, "relevance", system=RELEVANCE_SYSTEM_PROMPT)
    if batch is None:
        return None

    known_ids = {item["id"] for item in items}
    return [v for v in batch.verdicts if v.id in known_ids]


async def group_duplicate_tags(
    project_context: dict,
    tags: List[dict],
) -> Optional[List[TagGroup]]:
    """
    Propose duplicate groups among a project's tags.

    Args:
        project_context: {name, industry, keywords, competitors, description}
        tags: [{name, count}]

    Returns:
        Groups with at least one duplicate, or None if the service failed
    """
    if len(tags) < 2:
        return []

    prompt = (
        f"{format_project_context(project_context)}\n\n"
        f"TAGS (name and usage count):\n{json.dumps(tags, ensure_ascii=False)}"
    )
    grouping = await _call_llm(prompt, TagGrouping, "tag grouping", system=GROUPING_SYSTEM_PROMPT)
    if grouping is None:
        return None

    groups = []
    for group in grouping.groups:
        duplicates = [d for d in group.duplicates if d != group.canonical]
        if group.canonical and duplicates:
            groups.append(TagGroup(canonical=group.canonical, duplicates=duplicates))
    return groups


async def summarize_scans(
    current_stats: dict,
    previous_stats: dict,
    project_context: dict,
) -> Optional[str]:
    """
    Comparative narrative between the latest and the previous completed scan.

    Returns:
        Briefing text, or None if the service failed
    """
    prompt = (
        f"{format_project_context(project_context)}\n\n"
        f"LATEST SCAN:\n{json.dumps(current_stats, ensure_ascii=False, indent=1)}\n\n"
        f"PREVIOUS SCAN:\n{json.dumps(previous_stats, ensure_ascii=False, indent=1)}"
    )
    narrative = await _call_llm(
        prompt,
        BriefingNarrative,
        "briefing",
        system=BRIEFING_SYSTEM_PROMPT,
        temperature=settings.llm_briefing_temperature,
    )
    if narrative is None or not narrative.narrative.strip():
        return None
    return narrative.narrative.strip()
