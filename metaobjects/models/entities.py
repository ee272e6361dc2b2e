import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from metaobjects.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )


class FieldDefinition(Base, TimestampMixin):
    __tablename__ = "field_definitions"
    __table_args__ = (UniqueConstraint("short_name", name="uq_field_definitions_short_name"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    short_name: Mapped[str] = mapped_column(String(40), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    datatype: Mapped[str] = mapped_column(String(50), nullable=False)
    datatype_properties: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    validation_rules: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    mandatory: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    object_references: Mapped[list["ObjectFieldReference"]] = relationship(
        "ObjectFieldReference",
        back_populates="field",
    )


class ObjectDefinition(Base, TimestampMixin):
    __tablename__ = "object_definitions"
    __table_args__ = (UniqueConstraint("short_name", name="uq_object_definitions_short_name"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    short_name: Mapped[str] = mapped_column(String(40), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_properties: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    field_groups: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    wizard_config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    # Bumped whenever the resolved schema changes, including edits to referenced fields.
    schema_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )

    field_references: Mapped[list["ObjectFieldReference"]] = relationship(
        "ObjectFieldReference",
        back_populates="object_definition",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: [ObjectFieldReference.display_order, ObjectFieldReference.position],
    )


class ObjectFieldReference(Base):
    __tablename__ = "object_field_references"
    __table_args__ = (
        UniqueConstraint("object_id", "field_id", name="uq_object_field_references_object_field"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    object_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("object_definitions.id", ondelete="CASCADE"), nullable=False
    )
    field_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("field_definitions.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    # Null means "use the field definition's default".
    mandatory: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    object_definition: Mapped[ObjectDefinition] = relationship(
        "ObjectDefinition", back_populates="field_references"
    )
    field: Mapped[FieldDefinition] = relationship(
        "FieldDefinition", back_populates="object_references", lazy="joined"
    )

    @property
    def field_short_name(self) -> str:
        return self.field.short_name

    @property
    def effective_mandatory(self) -> bool:
        if self.mandatory is None:
            return bool(self.field.mandatory)
        return bool(self.mandatory)
