"""
Data Service package for Hapta.

The data service is the only component that talks to the record store.
Route handlers go through a request-scoped coordinator which serves reads
from the process cache where it can and keeps that cache consistent with
writes.

Structure:
- app.main: FastAPI app, lifecycle wiring and cache admin routes.
- app.caching: Cache engine, TTL policy and cross-node sync.
- app.adapters: HTTP client for the Pocketbase record store.
- app.data: Data access coordinator and its models.
"""
