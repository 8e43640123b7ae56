"""Process supervision backends."""
