"""
API service package for the Life-Skills Access Layer.

Structure:
- app.main: FastAPI app, startup/shutdown wiring and admin routes.
- app.caching: Namespaced cache manager and HTTP response caching middleware.
- app.monitoring: Performance sampler and request timing middleware.
- app.domain: Cross-cutting domain helpers (API key authentication).
- app.routes: Administrative performance and cache endpoints.
"""
