"""Component libraries."""
