"""
Maintenance agents that run over accumulated analysis output.
"""
from .context_filter import (
    ContextFilterBatchResult,
    run_context_filter_batch,
    run_context_filter,
    run_context_filter_all,
    reset_context_filter,
    purge_off_topic_results,
)
from .tag_normalizer import TagNormalizerResult, run_tag_normalizer, run_tag_normalizer_all
from .briefing import ScanStats, compute_scan_stats, regenerate_briefing, generate_briefing_for_scan
from .blacklist import (
    add_to_blacklist,
    remove_from_blacklist,
    list_blacklist,
    delete_results_by_tag,
    delete_results_by_ids,
    apply_blacklist_to_results,
)

__all__ = [
    "ContextFilterBatchResult",
    "run_context_filter_batch",
    "run_context_filter",
    "run_context_filter_all",
    "reset_context_filter",
    "purge_off_topic_results",
    "TagNormalizerResult",
    "run_tag_normalizer",
    "run_tag_normalizer_all",
    "ScanStats",
    "compute_scan_stats",
    "regenerate_briefing",
    "generate_briefing_for_scan",
    "add_to_blacklist",
    "remove_from_blacklist",
    "list_blacklist",
    "delete_results_by_tag",
    "delete_results_by_ids",
    "apply_blacklist_to_results",
]
