"""Dynamic category taxonomy."""

from sheetsage.taxonomy.manager import TaxonomyConfig, TaxonomyManager, content_signature
from sheetsage.taxonomy.similarity import HeuristicSimilarityGuard, SimilarityGuard, SimilarityMatch

__all__ = [
    "HeuristicSimilarityGuard",
    "SimilarityGuard",
    "SimilarityMatch",
    "TaxonomyConfig",
    "TaxonomyManager",
    "content_signature",
]
