"""Database engine, session factory and unit of work."""
