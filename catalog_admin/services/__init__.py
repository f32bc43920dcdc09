"""Domain services backing the catalog admin panel."""
