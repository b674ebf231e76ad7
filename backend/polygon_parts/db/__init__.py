"""Data models, layer naming and partition stores.

Submodules:
    - models: Raw part, polygon part and filter dataclasses.
    - naming: LayerNamingPolicy mapping layers to collection names.
    - database: PartitionStoreProtocol with in-memory and PostgreSQL
      implementations, and the get_partition_store() factory.

Example:
    Use in a service or FastAPI dependency:
        >>> from polygon_parts.db import database
        >>> store = database.get_partition_store(settings)
"""
