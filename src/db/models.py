from sqlalchemy import (
    MetaData,
    Column,
    String,
    Index,
    func,
    JSON,
    DateTime,
)
from sqlalchemy.orm import declarative_base

# Define naming conventions for constraints and indexes
# https://alembic.sqlalchemy.org/en/latest/naming.html
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)
Base = declarative_base(metadata=metadata)


class ReflectionEntry(Base):
    """A completed reflection. The id is generated by the client, not the database."""
    __tablename__ = "reflection_entries"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False)
    entry_kind = Column(String(64), nullable=False)  # template id
    data = Column(JSON, nullable=False)
    entry_metadata = Column("metadata", JSON, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_reflection_entries_user_id_completed_at_desc", "user_id", completed_at.desc()),
        Index("ix_reflection_entries_entry_kind", "entry_kind"),
    )
