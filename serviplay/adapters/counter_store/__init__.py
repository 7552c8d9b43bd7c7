"""Counter store adapters.

Redis is the primary store; the in-memory store wraps the local fallback
cache and keeps the same contract so either can serve the rate governor.
"""
