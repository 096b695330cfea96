"""HTTP surface: FastAPI routers and shared request helpers."""
