"""Bundled lesson and achievement catalogs."""
