"""Sales aggregation in normalized units."""
