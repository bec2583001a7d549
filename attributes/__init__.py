"""Custom-attribute engine: type dispatch and the per-entity resolution view."""
