"""Task queue: persistence, failure resolution and the worker loop."""
