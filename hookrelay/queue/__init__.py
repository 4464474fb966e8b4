"""Work-queue submission."""
