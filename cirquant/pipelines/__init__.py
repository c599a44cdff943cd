"""Per-year processing pipeline and batch runner."""
