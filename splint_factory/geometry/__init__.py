"""Geometry templates: parameter schemas, object ids and processor health."""
