"""Cadastral vector tile and label service.

This package serves Indonesian cadastral feature classes (parcels, blocks,
buildings and kecamatan boundaries) stored in PostGIS as Mapbox Vector
Tiles, GeoJSON tiles and per-district label points.

- Tile addressing follows the XYZ scheme in EPSG:3857 (Web Mercator)
- Features are filtered by a cadastral code prefix (the desa "district")
- Geometry is clipped and encoded in-process into MVT 2.1 protobuf
- Label centroids are computed by the store in EPSG:4326

See module sub-docstrings for details on architecture and usage.
"""
