"""HTTP routes. Versioned API routers live under ``routes.v1``."""
