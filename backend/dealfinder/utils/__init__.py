"""Utility helpers for dealfinder."""

from dealfinder.utils.helpers import utcnow, to_decimal, chunked

__all__ = ["utcnow", "to_decimal", "chunked"]
