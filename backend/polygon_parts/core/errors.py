"""Error taxonomy of the polygon parts service.

Every failure raised by the stores and services derives from
PolygonPartsError. The application factory maps each class to an HTTP
status code, so the services never deal with HTTP concerns themselves.

Example:
    Handle a missing layer:
        >>> from polygon_parts.core import errors
        >>> try:
        ...     manager.find_polygon_parts("unknown_orthophoto", None, False)
        ... except errors.NotFoundError as e:
        ...     print(f"No such layer: {e}")
"""


class PolygonPartsError(Exception):
    """Base class of all polygon parts errors."""

    status_code = 500


class NotFoundError(PolygonPartsError):
    """The layer's backing collections do not exist, or there is no data."""

    status_code = 404


class ConflictError(PolygonPartsError):
    """The layer already exists and cannot be created again."""

    status_code = 409


class ValidationError(PolygonPartsError):
    """A layer identifier or request value is malformed."""

    status_code = 400


class GeometryOperationError(PolygonPartsError):
    """The geometry kernel rejected an operation."""


class TransactionFailure(PolygonPartsError):
    """A layer transaction failed after work began and was rolled back.

    Raised for storage errors, lock acquisition timeouts and exceeded
    resolver deadlines. No partial state is ever committed when this is
    raised.
    """
