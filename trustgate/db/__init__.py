"""Database layer: engine, portable column types, models, read queries."""
