"""Overlap resolution, find, aggregation and their orchestration."""
