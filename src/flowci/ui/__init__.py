"""Console output for flowci."""
