"""Naming of the per-layer raw parts and polygon parts collections.

Each layer owns two collections whose physical names are derived from the
layer's entity identifier (``<product id>_<product type>``, lower case) and
the configured prefixes, suffixes and schema. The policy is an explicit
value built from the settings and passed to the stores and services.

Example:
    Resolve the collection names of a layer:
        >>> policy = LayerNamingPolicy(schema="polygon_parts")
        >>> metadata = policy.from_product("blue_marble", "Orthophoto")
        >>> metadata.parts.qualified_name
        'polygon_parts.blue_marble_orthophoto_parts'
"""

from __future__ import annotations

import dataclasses
import re

from polygon_parts.core import errors
from polygon_parts.db import models

ENTITY_IDENTIFIER_PATTERN = re.compile(
    r"^[a-z][a-z0-9_]{0,61}_("
    + "|".join(product_type.lower() for product_type in models.ProductType)
    + r")$"
)
DATABASE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,62}$")


@dataclasses.dataclass(frozen=True)
class LayerNamingPolicy:
    """Schema plus prefix/suffix rules of the two collections of a layer."""

    schema: str = "polygon_parts"
    parts_prefix: str = ""
    parts_suffix: str = "_parts"
    polygon_parts_prefix: str = ""
    polygon_parts_suffix: str = ""

    def from_product(
        self,
        product_id: str,
        product_type: str,
    ) -> models.EntitiesMetadata:
        """Resolve the layer of a product id and product type.

        Raises:
            ValidationError: If the derived identifier is not allowed.
        """
        identifier = f"{product_id}_{product_type}".lower()
        return self.from_identifier(identifier)

    def from_resource_identifier(self, name: str) -> models.EntitiesMetadata:
        """Resolve a layer from a polygon parts entity name.

        The name may carry the polygon parts prefix/suffix or the schema,
        which are stripped before validation.

        Raises:
            ValidationError: If the name is not an allowed identifier.
        """
        identifier = name
        schema_prefix = f"{self.schema}."
        if identifier.startswith(schema_prefix):
            identifier = identifier[len(schema_prefix):]
        if self.polygon_parts_prefix and identifier.startswith(
            self.polygon_parts_prefix
        ):
            identifier = identifier[len(self.polygon_parts_prefix):]
        if self.polygon_parts_suffix and identifier.endswith(
            self.polygon_parts_suffix
        ):
            identifier = identifier[: -len(self.polygon_parts_suffix)]
        return self.from_identifier(identifier)

    def from_identifier(self, identifier: str) -> models.EntitiesMetadata:
        """Resolve a validated entity identifier into collection names.

        Raises:
            ValidationError: If the identifier or a derived name is invalid.
        """
        if not ENTITY_IDENTIFIER_PATTERN.match(identifier):
            raise errors.ValidationError(
                f"Invalid polygon parts entity identifier '{identifier}'"
            )
        return models.EntitiesMetadata(
            entity_identifier=identifier,
            parts=self._names(self.parts_prefix, identifier, self.parts_suffix),
            polygon_parts=self._names(
                self.polygon_parts_prefix,
                identifier,
                self.polygon_parts_suffix,
            ),
        )

    def _names(
        self,
        prefix: str,
        identifier: str,
        suffix: str,
    ) -> models.EntityNames:
        entity_name = f"{prefix}{identifier}{suffix}"
        if not DATABASE_NAME_PATTERN.match(entity_name):
            raise errors.ValidationError(
                f"Entity name '{entity_name}' is not a valid database name"
            )
        return models.EntityNames(
            entity_name=entity_name,
            qualified_name=f"{self.schema}.{entity_name}",
        )
