"""examprep FastAPI application."""
