"""
Pydantic schemas for AI analysis with Instructor.

These schemas enforce structured JSON output from the LLM and coerce the
loosely-typed values it tends to return (odd casing, out-of-range scores,
unknown enum labels) before anything reaches persisted state.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..common.url_utils import normalize_domain, normalize_tag_name

logger = logging.getLogger(__name__)


class Sentiment(str, Enum):
    """Overall tone of a result towards the monitored brand/topic."""
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    MIXED = "mixed"


class EntityType(str, Enum):
    BRAND = "brand"
    PERSON = "person"
    PRODUCT = "product"
    TECHNOLOGY = "technology"
    LOCATION = "location"


# Labels the model uses that are not in EntityType
ENTITY_TYPE_ALIASES = {
    "company": EntityType.BRAND,
    "organization": EntityType.BRAND,
    "organisation": EntityType.BRAND,
    "org": EntityType.BRAND,
    "azienda": EntityType.BRAND,
    "marca": EntityType.BRAND,
    "people": EntityType.PERSON,
    "persona": EntityType.PERSON,
    "service": EntityType.PRODUCT,
    "prodotto": EntityType.PRODUCT,
    "software": EntityType.TECHNOLOGY,
    "tool": EntityType.TECHNOLOGY,
    "tecnologia": EntityType.TECHNOLOGY,
    "place": EntityType.LOCATION,
    "city": EntityType.LOCATION,
    "country": EntityType.LOCATION,
    "luogo": EntityType.LOCATION,
}

SENTIMENT_ALIASES = {
    "positivo": Sentiment.POSITIVE,
    "negativo": Sentiment.NEGATIVE,
    "neutro": Sentiment.NEUTRAL,
    "neutrale": Sentiment.NEUTRAL,
    "misto": Sentiment.MIXED,
}


class ThemeEntry(BaseModel):
    """A theme discussed by a result. Names are stored normalized (lowercase)."""
    name: str = Field(description="Short theme label, 1-3 words, in the content language")
    confidence: float = Field(default=0.5, description="0.0-1.0 confidence the theme is central")

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return normalize_tag_name(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.5
        return max(0.0, min(1.0, value))


class EntityEntry(BaseModel):
    """A named entity mentioned in a result."""
    name: str
    type: EntityType = Field(description="brand | person | product | technology | location")

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, v) -> EntityType:
        """Map free-form labels onto EntityType; unknown labels become brand."""
        if isinstance(v, EntityType):
            return v
        label = str(v or "").strip().lower()
        try:
            return EntityType(label)
        except ValueError:
            pass
        if label in ENTITY_TYPE_ALIASES:
            return ENTITY_TYPE_ALIASES[label]
        logger.debug(f"Unknown entity type '{v}', defaulting to brand")
        return EntityType.BRAND

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()


class ResultAnalysis(BaseModel):
    """Analysis of one SERP result, keyed by its position."""
    position: int = Field(description="Position of the result as given in the input")
    themes: List[ThemeEntry] = Field(default_factory=list, description="2-5 main themes")
    sentiment: Sentiment = Sentiment.NEUTRAL
    sentiment_score: float = Field(default=0.0, description="-1.0 (very negative) to 1.0 (very positive)")
    entities: List[EntityEntry] = Field(default_factory=list)
    summary: str = Field(default="", description="One-sentence summary")
    is_competitor: bool = Field(default=False, description="True if the domain looks like a competitor")
    is_hi_priority: bool = Field(default=False, description="True if an alert keyword is matched")
    priority_reason: Optional[str] = Field(default=None, description="Why is_hi_priority is true (one sentence)")

    @field_validator("sentiment", mode="before")
    @classmethod
    def coerce_sentiment(cls, v) -> Sentiment:
        if isinstance(v, Sentiment):
            return v
        label = str(v or "").strip().lower()
        try:
            return Sentiment(label)
        except ValueError:
            return SENTIMENT_ALIASES.get(label, Sentiment.NEUTRAL)

    @field_validator("sentiment_score", mode="before")
    @classmethod
    def clamp_score(cls, v) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        return max(-1.0, min(1.0, value))

    @field_validator("themes")
    @classmethod
    def dedupe_themes(cls, v: List[ThemeEntry]) -> List[ThemeEntry]:
        """Drop empty and repeated theme names, keeping the first occurrence."""
        seen = set()
        unique = []
        for theme in v:
            if theme.name and theme.name not in seen:
                seen.add(theme.name)
                unique.append(theme)
        return unique

    @field_validator("priority_reason")
    @classmethod
    def blank_reason_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class SerpAnalysis(BaseModel):
    """Batch analysis of all results of one job."""
    results: List[ResultAnalysis] = Field(default_factory=list)
    discovered_competitors: List[str] = Field(
        default_factory=list,
        description="Hostnames (no www) judged to be competitors in the industry",
    )

    @field_validator("discovered_competitors")
    @classmethod
    def normalize_domains(cls, v: List[str]) -> List[str]:
        domains = []
        for raw in v:
            domain = normalize_domain(raw)
            if domain and "." in domain and domain not in domains:
                domains.append(domain)
        return domains

    def by_position(self) -> Dict[int, ResultAnalysis]:
        """First analysis per position."""
        mapping: Dict[int, ResultAnalysis] = {}
        for result in self.results:
            mapping.setdefault(result.position, result)
        return mapping


class RelevanceVerdict(BaseModel):
    """Context filter verdict for one analysed result."""
    id: int = Field(description="The id given in the input")
    is_off_topic: bool
    reason: Optional[str] = Field(default=None, description="Short reason (max one sentence)")


class RelevanceBatch(BaseModel):
    verdicts: List[RelevanceVerdict] = Field(default_factory=list)


class TagGroup(BaseModel):
    """Semantically equivalent tag names merged under one canonical name."""
    canonical: str = Field(description="The tag name to keep (must be one of the input names)")
    duplicates: List[str] = Field(default_factory=list, description="Names to merge into canonical")

    @field_validator("canonical")
    @classmethod
    def normalize_canonical(cls, v: str) -> str:
        return normalize_tag_name(v)

    @field_validator("duplicates")
    @classmethod
    def normalize_duplicates(cls, v: List[str]) -> List[str]:
        names = []
        for raw in v:
            name = normalize_tag_name(raw)
            if name and name not in names:
                names.append(name)
        return names


class TagGrouping(BaseModel):
    groups: List[TagGroup] = Field(default_factory=list)


class BriefingNarrative(BaseModel):
    """Comparative executive briefing between two scans."""
    narrative: str = Field(description="3-5 sentence comparative briefing")
