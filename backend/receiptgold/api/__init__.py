"""HTTP API: FastAPI app, routes and dependencies."""
