"""Control surface services."""
