from .schemas import (
    BriefingNarrative,
    EntityEntry,
    EntityType,
    RelevanceVerdict,
    ResultAnalysis,
    Sentiment,
    SerpAnalysis,
    TagGroup,
    ThemeEntry,
)
from .analyzer import (
    analyze_serp_results,
    evaluate_relevance,
    group_duplicate_tags,
    summarize_scans,
)

__all__ = [
    "BriefingNarrative",
    "EntityEntry",
    "EntityType",
    "RelevanceVerdict",
    "ResultAnalysis",
    "Sentiment",
    "SerpAnalysis",
    "TagGroup",
    "ThemeEntry",
    "analyze_serp_results",
    "evaluate_relevance",
    "group_duplicate_tags",
    "summarize_scans",
]
