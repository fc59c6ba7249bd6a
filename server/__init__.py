"""HTTP API, service wiring and background jobs for SiteFoundry."""
