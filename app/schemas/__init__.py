"""Pydantic schemas for request and response models."""
