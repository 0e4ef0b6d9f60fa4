"""
Multi-source news aggregation pipeline.

Pulls articles from a budgeted news API, RSS/Atom feeds and scraped sites,
moderates them, and returns one newest-first list.
"""

__version__ = "0.1.0"
