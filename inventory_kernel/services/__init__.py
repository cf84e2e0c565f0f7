"""Kernel services: sequence allocation, audit chain writing and verification, revert."""
