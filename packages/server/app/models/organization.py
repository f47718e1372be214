"""Organization (tenant) model."""

from sqlmodel import Field, SQLModel

from .base import JSONType, TimestampMixin, UUIDMixin


class Organization(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "organizations"

    code: str = Field(unique=True, nullable=False, index=True)
    name: str = Field(nullable=False, index=True)
    # Deactivation stops the org resolving as an effective context; nothing cascades.
    is_active: bool = Field(default=True, nullable=False)
    settings: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
