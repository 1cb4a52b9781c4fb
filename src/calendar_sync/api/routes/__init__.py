"""API route modules: auth, events, webhooks."""
