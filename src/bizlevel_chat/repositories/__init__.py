"""Document store backends."""
