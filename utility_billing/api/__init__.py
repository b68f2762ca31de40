"""HTTP API for the water billing engine."""
