"""
article-cache: an offline cache coordinator for articles and their resources.
"""

__version__ = "0.3.0"
