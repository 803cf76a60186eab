"""
politecrawl

A polite, concurrent web crawler: a threaded worker pool fed from a durable
URL frontier, throttled per domain and bounded by robots.txt.
"""

__version__ = "1.0.0"
__description__ = "A polite concurrent web crawler with adaptive per-domain rate limiting"
