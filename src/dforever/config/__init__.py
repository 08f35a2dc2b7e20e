"""Configuration: canonical YAML store, validation, settings and logging."""
