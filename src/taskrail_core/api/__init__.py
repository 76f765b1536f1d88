"""HTTP adapter for taskrail-core."""
