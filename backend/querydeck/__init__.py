"""querydeck: multi-tenant product analytics API."""
