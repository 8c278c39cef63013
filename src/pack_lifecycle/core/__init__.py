"""Core configuration and registry transport."""
