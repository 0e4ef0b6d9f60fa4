"""
news_pipeline.filter -- Content moderation and duplicate detection.

Scores aggregated articles for quality, source reliability and spam, and
flags near-duplicates within a batch.
"""

from news_pipeline.filter.content_moderator import ContentModerator
from news_pipeline.filter.similarity_checker import SimilarityChecker

__all__ = ["ContentModerator", "SimilarityChecker"]
