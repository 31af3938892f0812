"""Utility functions for the billing kernel."""
