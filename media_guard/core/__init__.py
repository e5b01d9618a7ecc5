"""
Core modules for Media Guard.

This package contains request fingerprinting, the content-addressed cache,
upload deduplication, durable job execution, pricing and usage limits.
"""
