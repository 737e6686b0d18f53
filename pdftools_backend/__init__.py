"""
Backend package for the PDF tools site.

This package provides a FastAPI application for account registration and
login, page visit logging and per-tool usage counters, on top of a document
store abstraction (MongoDB, SQL or in-memory).
"""
