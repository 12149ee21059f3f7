"""
Shared, cross-cutting code for the API.

`core/` holds the building blocks every feature reuses: DB wiring, settings,
pagination, the streaming export pipeline, the cache tiers, rate limiting and
the bulk-mutation pipeline. Keep feature-specific SQL and business logic in the
corresponding feature package (e.g. `catalog/`).
"""
