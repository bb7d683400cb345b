"""Bundled data model resources (``<name>.model.toml``)."""
