"""Route handlers for the processor API."""
