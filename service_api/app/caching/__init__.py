"""
Response caching package.

Provides the namespaced in-process cache used by the API to reduce load on
the database and third-party APIs, plus the HTTP middleware that wraps it
around JSON routes. Cached values are read optimizations over idempotent
GET data; prefer short TTLs and explicit invalidation after writes.
"""
