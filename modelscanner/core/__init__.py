"""Core file-processing pipeline: result record, download cache, reporter and runner."""
