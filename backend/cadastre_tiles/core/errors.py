"""Error taxonomy for the tile and label service.

Each exception carries a stable ``error`` name used in the JSON body of
error responses (``{"error": ..., "message": ...}``) and the HTTP status
the application maps it to. Handlers are registered in
:func:`cadastre_tiles.main.create_app`.

Example:
    Raise a client error for a bad tile address:
        >>> from cadastre_tiles.core import errors
        >>> raise errors.InvalidTileAddress("x=16384 out of range for zoom 14")
"""

from __future__ import annotations


class TileServiceError(RuntimeError):
    """Base class for errors raised by the tile and label pipeline."""

    status_code = 500

    @property
    def error(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, str]:
        """Return the JSON error body for this exception."""
        return {"error": self.error, "message": str(self)}


class InvalidTileAddress(TileServiceError, ValueError):
    """Raised when zoom, x, or y fall outside the tile pyramid.

    The message identifies which coordinate is invalid.
    """

    status_code = 400


class InvalidDistrictCode(TileServiceError, ValueError):
    """Raised when a districtCode parameter is not a cadastral prefix."""

    status_code = 400


class UnknownLayer(TileServiceError, LookupError):
    """Raised when a request names a layer that is not registered."""

    status_code = 404


class StoreUnavailable(TileServiceError):
    """Raised when the spatial store cannot answer a query.

    Covers connection failures, pool exhaustion, statement timeouts and
    queries cancelled because the client disconnected. Never retried
    within the request.
    """

    status_code = 503


class MalformedGeometry(TileServiceError, ValueError):
    """Raised when a single feature's geometry cannot be clipped.

    The tile pipeline skips the feature and logs a warning.
    """


class EncodingFailure(TileServiceError):
    """Raised when a tile cannot be serialised to the MVT wire format."""
