"""cache/ -- Persisted client state and the generic entity cache store."""
