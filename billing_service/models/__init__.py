"""ORM tables, enums and API schemas."""
