"""Loader subpackage: resolve, read, and assemble model artifacts into a pipeline."""
