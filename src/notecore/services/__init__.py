"""Service layer for notecore."""
