"""Cross-cutting settings and logging setup."""
