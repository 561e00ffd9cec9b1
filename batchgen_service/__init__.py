"""
Streaming batch image generation service package.

Exposes reusable primitives for normalizing template jobs, bounding
backend concurrency, orchestrating a batch run, and serving the FastAPI
application that streams NDJSON progress.
"""
