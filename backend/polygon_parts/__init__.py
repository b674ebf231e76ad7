"""Polygon parts package for the raster catalog backend.

This package maintains, per raster product layer, a set of
non-overlapping "polygon parts": footprints annotated with imaging
metadata, derived from possibly overlapping submitted parts. It serves
spatial find/clip queries and metadata aggregation over that set.

- Overlap resolution with last-write-wins semantics by insertion order
- Layer storage in PostGIS (one table pair per layer) or in memory
- Find queries with resolution filters and optional clipping
- Aggregation of the footprint, imaging times, resolutions and sensors
- FastAPI endpoints with pydantic request validation

See DESIGN.md and module sub-docstrings for details on architecture and usage.
"""
