"""Trade record schema and JSON trade store."""
