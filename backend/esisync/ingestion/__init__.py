"""Synchronization engine: shared coordination primitives and jobs."""
