"""Token lifecycle, entity lookup and import batch tracking services."""
