"""
Utility helpers for cache keys, URLs and display formatting.
"""
