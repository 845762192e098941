"""Cloud provider API clients and the typed models they return."""
