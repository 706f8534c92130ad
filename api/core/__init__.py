"""
Shared, cross-cutting code for the API.

`core/` holds the building blocks every feature uses: settings, logging, the
connection pool, the query builder and the per-request transaction
middleware. Keep feature-specific queries and business logic in the
corresponding feature package (e.g. `auth/`).
"""
