"""Semantic interpretation of task output."""
