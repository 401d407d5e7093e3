"""
Memory Mesh Application

Captures content into enriched, deduplicated memories, links them into a
per-user relation graph and answers queries with ranked, cited results.
"""

__version__ = "1.0.0"
__author__ = "Memory Mesh Team"
__description__ = "Memory enrichment, relation graph and hybrid search pipeline"
