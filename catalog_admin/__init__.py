"""Catalog admin panel: upload job queue and duplicate entity management."""
