"""
Cache package initialization.

Holds the Redis client backing the courier geo index.
"""
