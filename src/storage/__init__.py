"""Persistence: the repository contract and its in-memory and Postgres backends."""
