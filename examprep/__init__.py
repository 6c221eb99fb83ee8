"""examprep resilience and caching layer."""
