"""HTTP boundary: FastAPI application, routes and exception handlers."""
