"""Request plumbing for the annotator.

Request IDs and structlog contextvars, plus the ASGI middleware that buffers
HTML responses and runs the page pipeline over them.
"""
