"""API router subpackage for the polygon parts service.

Submodules:
    - schemas: Pydantic request models and boundary validation.
    - polygon_parts: Endpoints for creating, updating, checking, finding
      and aggregating polygon parts layers.
"""
