"""Database models and schema helpers."""
