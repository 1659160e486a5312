"""Database metadata: the declarative Base shared by every model and by Alembic."""
