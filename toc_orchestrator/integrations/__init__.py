"""Clients and codecs for external clinical systems."""
