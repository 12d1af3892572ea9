"""Two-pass article synthesis: plan once, write sections concurrently, emit in order."""
