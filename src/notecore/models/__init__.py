"""Domain records and database models for notecore."""
