"""Database access for health checks and diagnostics."""
