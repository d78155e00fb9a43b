"""Action plan engine: versioned task graphs with progress tracking."""

__version__ = "1.0.0"
