"""Error tracking (Sentry)."""
