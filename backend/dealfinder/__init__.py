"""Application package for the flight-deal detection service."""
