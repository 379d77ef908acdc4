"""Spatial store access and data models.

``database`` holds the feature gateway protocol with its PostGIS and
in-memory implementations, the connection pool factory and the query
cancellation handle. ``models`` holds the layer registry and the feature,
label and tile value types.

Example:
    Use in a service or FastAPI dependency:
        >>> from cadastre_tiles.db import database
        >>> gateway = database.get_feature_gateway(app.state.pool, settings)
"""
