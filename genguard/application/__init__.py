"""HTTP application layer: FastAPI app, routes and middleware."""
