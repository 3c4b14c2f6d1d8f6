"""Entity-scoped role-based authorization for the event platform."""
