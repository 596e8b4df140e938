"""API routers: jobs, generation health and dead-letter operations."""
