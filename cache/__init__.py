"""cache/ -- Advisory Redis cache. Every failure here is a miss, never an error.

Layer rule: cache/ may import from core/ only.
"""
