"""Swipe-driven automation queue: accumulation, submission, caching."""
