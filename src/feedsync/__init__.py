"""Feed synchronization engine: polling with backoff and push subscriptions."""
