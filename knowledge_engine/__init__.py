"""Hybrid knowledge retrieval and memory extraction engine."""
