"""Task orchestration core: scope checks, validation, providers and the run pipeline."""
