# Sentiment Indexer Aggregator
# Composite index calculation and persistence

"""
Aggregator module for computing the composite sentiment index.

Components:
- AggregationEngine: Scores components from stored records, composes and upserts the index
- ComponentScorer: One scoring function per component
"""

from .composite_aggregator import AggregationEngine, DateOutcome, compose_index, validate_weights
from .scorers import ComponentScorer, default_scorers

__all__ = [
    "AggregationEngine",
    "DateOutcome",
    "compose_index",
    "validate_weights",
    "ComponentScorer",
    "default_scorers",
]
