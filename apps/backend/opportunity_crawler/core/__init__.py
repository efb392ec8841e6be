"""
Shared building blocks: errors, cache, database access and LLM extraction.
"""
