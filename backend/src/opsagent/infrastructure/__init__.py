"""Infrastructure adapters (AI vendors, stores, auth, business layer)."""
