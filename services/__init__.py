"""Shared services for SiteFoundry."""
