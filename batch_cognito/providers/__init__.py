"""Concrete directory clients."""
