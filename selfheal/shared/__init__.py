"""Shared data model, errors and scoring used by agents and backend."""
