"""
Page fetching, markdown normalization and source scrapers.
"""
