"""Backup services: storage, encryption, serialization, building, validation, lifecycle, scheduling."""
