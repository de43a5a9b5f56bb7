"""Persistence, approval and audit primitives."""
