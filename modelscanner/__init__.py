"""ModelScanner — background worker that downloads a remote file once, runs the
requested analysis tasks over it and reports each result to a callback URL."""

__version__ = "1.0.0"
