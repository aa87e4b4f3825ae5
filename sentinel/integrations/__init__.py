"""External protocol integrations."""
