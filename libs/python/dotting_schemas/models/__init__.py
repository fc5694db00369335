"""Domain models for the compile pipeline."""
