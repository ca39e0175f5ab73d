"""
Settings package: configuration API and application paths.

This package provides:

- :mod:`AccountsDiary.settings.lib` – Client/server configuration, schema validation and file locations.
"""
