"""Import OpenStreetMap data into PostGIS, deploy it atomically, and keep it current with diffs."""

__version__ = "0.1.0"
