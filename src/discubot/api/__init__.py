"""HTTP surface for the discussion processor."""
