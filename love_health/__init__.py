"""
Backend package for the love_health mobile web app.

This package provides a FastAPI application for user accounts and profiles,
backed by a soft-delete aware data-access layer, S3-compatible object storage
and a Redis cache.
"""
